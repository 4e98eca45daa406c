import asyncio
import json
import threading

import pytest

from avr_tracker.core.errors import ProviderError
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.session import SessionStore

from conftest import USER_PHONE, eventually


def identity(role=UserRole.USER, identifier=USER_PHONE):
    return AuthenticatedIdentity(identifier=identifier, display_name="Ravi", role=role)


def test_publish_sets_state(tmp_path):
    path = tmp_path / "session.json"
    session = SessionStore(persist_path=str(path))
    seen = []
    session.add_listener(lambda s: seen.append(s.identifier))

    session.publish(identity())

    assert session.is_authenticated
    assert session.role is UserRole.USER
    assert json.loads(path.read_text()) == {"identifier": USER_PHONE}
    assert seen == [USER_PHONE]


def test_unknown_role_is_never_authenticated(tmp_path):
    session = SessionStore(persist_path=str(tmp_path / "session.json"))
    session.publish(identity(UserRole.UNKNOWN))
    assert not session.is_authenticated
    assert session.identity is None
    assert not (tmp_path / "session.json").exists()


def test_logout_is_idempotent(tmp_path):
    path = tmp_path / "session.json"
    session = SessionStore(persist_path=str(path))
    seen = []
    session.add_listener(lambda s: seen.append(s.identifier))
    session.publish(identity())

    session.logout()
    session.logout()

    assert session.identity is None
    assert session.identifier is None
    assert not path.exists()
    assert seen == [USER_PHONE, None]


@pytest.mark.asyncio
async def test_restore_is_stale_while_revalidate(tmp_path, resolver, make_user):
    make_user(USER_PHONE, name="Ravi")
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"identifier": USER_PHONE}))
    session = SessionStore(persist_path=str(path))

    restored = await session.restore(resolver)

    # identifier is known straight away, the profile follows
    assert restored == USER_PHONE
    assert session.identifier == USER_PHONE
    await session.wait_revalidated()
    assert session.identity.display_name == "Ravi"
    assert session.is_authenticated


@pytest.mark.asyncio
async def test_restore_without_saved_session(tmp_path, resolver):
    session = SessionStore(persist_path=str(tmp_path / "session.json"))
    assert await session.restore(resolver) is None
    assert session.identifier is None


@pytest.mark.asyncio
async def test_restore_for_removed_user_logs_out(tmp_path, resolver):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"identifier": USER_PHONE}))
    session = SessionStore(persist_path=str(path))

    await session.restore(resolver)
    await session.wait_revalidated()

    assert session.identifier is None
    assert not path.exists()


class FlakyResolver:
    def resolve_identifier(self, identifier):
        raise ProviderError("offline")


@pytest.mark.asyncio
async def test_restore_keeps_identifier_when_provider_fails(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"identifier": USER_PHONE}))
    session = SessionStore(persist_path=str(path))

    await session.restore(FlakyResolver())
    await session.wait_revalidated()

    assert session.identifier == USER_PHONE
    assert session.identity is None
    assert path.exists()


@pytest.mark.asyncio
async def test_logout_during_revalidation_wins(tmp_path, resolver, make_user):
    make_user(USER_PHONE)
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"identifier": USER_PHONE}))
    session = SessionStore(persist_path=str(path))

    await session.restore(resolver)
    session.logout()
    await asyncio.sleep(0.1)

    assert session.identity is None
    assert session.identifier is None


@pytest.mark.asyncio
async def test_publish_from_another_thread_lands_on_the_loop():
    session = SessionStore()
    session.bind()
    loop_thread = threading.get_ident()
    applied_on = []
    session.add_listener(lambda s: applied_on.append(threading.get_ident()))

    worker = threading.Thread(target=session.publish, args=(identity(),))
    worker.start()
    worker.join()
    await eventually(lambda: session.identity is not None)

    assert applied_on == [loop_thread]
