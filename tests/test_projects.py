import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from avr_tracker.core.config import get_settings
from avr_tracker.schemas.project import ProjectStatus, TempApproverAssign
from avr_tracker.schemas.user import UserRole
from avr_tracker.services.document_store import DocumentSnapshot, FieldFilter, Or, Query
from avr_tracker.services.expenses import ExpenseAggregator
from avr_tracker.services.projects import (
    ProjectSynchronizer, build_project_query, can_view_project, decode_projects, list_visible_projects,
)
from avr_tracker.services.temp_approvers import TempApproverService

from conftest import (
    ADMIN_EMAIL, APPROVER_PHONE, BASE_TIME, OTHER_PHONE, USER_PHONE, eventually, next_snapshot, session_for,
)

PROJECTS = get_settings().PROJECTS_COLLECTION


def test_user_query():
    query = build_project_query("+91" + USER_PHONE, UserRole.USER)
    assert query == Query(PROJECTS, (
        FieldFilter("teamMembers", "array_contains", USER_PHONE),
        FieldFilter("status", "==", ProjectStatus.ACTIVE),
    ))


def test_approver_query():
    query = build_project_query(APPROVER_PHONE, UserRole.APPROVER)
    assert query == Query(PROJECTS, (
        Or(FieldFilter("managerId", "==", APPROVER_PHONE), FieldFilter("tempApproverID", "==", APPROVER_PHONE)),
        FieldFilter("status", "==", ProjectStatus.ACTIVE),
    ))


def test_admin_query_is_unfiltered():
    assert build_project_query(ADMIN_EMAIL, UserRole.ADMIN) == Query(PROJECTS)
    # the sentinel address sees everything whatever the role says
    assert build_project_query(ADMIN_EMAIL, UserRole.USER) == Query(PROJECTS)


def test_unknown_role_sees_nothing():
    assert build_project_query(USER_PHONE, UserRole.UNKNOWN) is None


def test_unknown_role_opt_in(monkeypatch):
    monkeypatch.setattr(get_settings(), "UNKNOWN_ROLE_SEES_ALL", True)
    assert build_project_query(USER_PHONE, UserRole.UNKNOWN) == Query(PROJECTS)


def test_decode_sorts_newest_first_and_counts_bad_documents():
    def doc(doc_id, **data):
        base = {"name": doc_id, "status": "ACTIVE", "managerId": APPROVER_PHONE}
        base.update(data)
        return DocumentSnapshot(doc_id, PROJECTS, base)

    documents = [
        doc("old", createdAt="2025-01-01T00:00:00.000000+00:00"),
        doc("broken-status", status="ARCHIVED", createdAt="2025-01-05T00:00:00.000000+00:00"),
        doc("new", createdAt="2025-03-01T00:00:00.000000+00:00"),
        doc("no-date"),
        doc("mid", createdAt="2025-02-01T00:00:00.000000+00:00"),
    ]

    projects, skipped = decode_projects(documents)

    assert [p.id for p in projects] == ["new", "mid", "old"]
    assert skipped == 2
    for earlier, later in zip(projects, projects[1:]):
        assert earlier.created_at >= later.created_at


def test_list_visible_projects_per_role(store, make_project, admin, approver, member):
    mine = make_project(team=[USER_PHONE])
    make_project(team=[OTHER_PHONE], manager=OTHER_PHONE)
    done = make_project(team=[USER_PHONE], status="COMPLETED")
    covering = make_project(team=[], manager=OTHER_PHONE, temp_approver=APPROVER_PHONE)

    assert {p.id for p in list_visible_projects(store, member).projects} == {mine}
    assert {p.id for p in list_visible_projects(store, approver).projects} == {mine, covering}
    assert len(list_visible_projects(store, admin).projects) == 4
    assert [p.id for p in list_visible_projects(store, admin, ProjectStatus.COMPLETED).projects] == [done]
    # status filter is ignored for everyone else
    assert {p.id for p in list_visible_projects(store, member, ProjectStatus.COMPLETED).projects} == {mine}


def test_can_view_project(store, make_project, member, approver, admin):
    from avr_tracker.services.project_admin import ProjectService

    service = ProjectService(store)
    active = service.get(make_project(team=[USER_PHONE]))
    closed = service.get(make_project(team=[USER_PHONE], status="CANCELLED"))

    assert can_view_project(member, active)
    assert not can_view_project(member, closed)
    assert can_view_project(approver, active)
    assert can_view_project(admin, closed)


@pytest.mark.asyncio
async def test_admin_sees_everything_until_filtered(store, make_project, admin):
    active = make_project(status="ACTIVE")
    completed = make_project(status="COMPLETED")
    cancelled = make_project(status="CANCELLED")

    synchronizer = ProjectSynchronizer(store, session_for(admin))
    subscription = await synchronizer.subscribe()
    snapshot = await next_snapshot(subscription)

    assert [p.id for p in snapshot.projects] == [cancelled, completed, active]

    synchronizer.set_status_filter(ProjectStatus.COMPLETED)
    assert [p.id for p in synchronizer.visible_projects] == [completed]
    assert len(synchronizer.projects) == 3

    synchronizer.set_status_filter(None)
    assert len(synchronizer.visible_projects) == 3
    synchronizer.close()


@pytest.mark.asyncio
async def test_status_filter_is_a_no_op_for_users(store, make_project, member):
    make_project(team=[USER_PHONE])
    synchronizer = ProjectSynchronizer(store, session_for(member))
    await next_snapshot(await synchronizer.subscribe())

    synchronizer.set_status_filter(ProjectStatus.COMPLETED)

    assert synchronizer.status_filter is None
    assert len(synchronizer.visible_projects) == 1
    synchronizer.close()


@pytest.mark.asyncio
async def test_writes_are_redelivered(store, make_project, member):
    synchronizer = ProjectSynchronizer(store, session_for(member))
    subscription = await synchronizer.subscribe()
    assert (await next_snapshot(subscription)).projects == []

    project_id = await asyncio.to_thread(make_project, team=[USER_PHONE])
    snapshot = await next_snapshot(subscription)
    assert [p.id for p in snapshot.projects] == [project_id]

    await asyncio.to_thread(store.update_document, PROJECTS, project_id, {"status": "COMPLETED"})
    snapshot = await next_snapshot(subscription)
    assert snapshot.projects == []
    synchronizer.close()


@pytest.mark.asyncio
async def test_snapshot_counts_skipped_documents(store, make_project, admin):
    make_project()
    store.set_document(PROJECTS, "broken", {"name": "no status"})

    synchronizer = ProjectSynchronizer(store, session_for(admin))
    snapshot = await next_snapshot(await synchronizer.subscribe())

    assert len(snapshot.projects) == 1
    assert snapshot.skipped == 1
    synchronizer.close()


@pytest.mark.asyncio
async def test_resubscribe_keeps_one_listener(store, make_project, admin, member):
    make_project(team=[USER_PHONE])
    synchronizer = ProjectSynchronizer(store, session_for(member))

    first = await synchronizer.subscribe()
    assert store.listener_count() == 1

    second = await synchronizer.subscribe(admin)
    assert first.cancelled
    assert not second.cancelled
    assert store.listener_count() == 1

    # the old iterator ends, the new one carries on
    with pytest.raises(StopAsyncIteration):
        await next_snapshot(first)
    assert len((await next_snapshot(second)).projects) == 1

    synchronizer.close()
    assert store.listener_count() == 0


@pytest.mark.asyncio
async def test_cancelled_subscription_gets_nothing(store, make_project, admin):
    synchronizer = ProjectSynchronizer(store, session_for(admin))
    subscription = await synchronizer.subscribe()
    await next_snapshot(subscription)

    synchronizer.close()
    await asyncio.to_thread(make_project)
    await asyncio.sleep(0.05)

    assert synchronizer.projects == []
    with pytest.raises(StopAsyncIteration):
        await next_snapshot(subscription)
    with pytest.raises(RuntimeError):
        await synchronizer.subscribe()


@pytest.mark.asyncio
async def test_unknown_role_gets_an_empty_snapshot_and_no_listener(store, make_project):
    from avr_tracker.schemas.user import AuthenticatedIdentity

    make_project()
    stranger = AuthenticatedIdentity(identifier=USER_PHONE, display_name="?", role=UserRole.UNKNOWN)
    synchronizer = ProjectSynchronizer(store, session_for(stranger))

    snapshot = await next_snapshot(await synchronizer.subscribe(stranger))

    assert snapshot.projects == []
    assert store.listener_count() == 0
    synchronizer.close()


@pytest.mark.asyncio
async def test_each_delivery_refreshes_pending(store, make_project, make_expense, approver):
    project_id = make_project()
    make_expense(project_id, status="PENDING")
    session = session_for(approver)
    aggregator = ExpenseAggregator(store, session)
    synchronizer = ProjectSynchronizer(store, session, aggregator)

    await next_snapshot(await synchronizer.subscribe())
    await eventually(lambda: len(aggregator.pending_expenses) == 1)

    second = await asyncio.to_thread(make_project, created_at=BASE_TIME + timedelta(days=30))
    await asyncio.to_thread(make_expense, second, status="PENDING")
    # the expense write alone does not touch the projects collection
    await asyncio.to_thread(store.update_document, PROJECTS, second, {"description": "Reshoot"})
    await eventually(lambda: len(aggregator.pending_expenses) == 2)
    synchronizer.close()


@pytest.mark.asyncio
async def test_rejecting_an_invitation_drops_the_project(store, make_project, make_user, admin, approver):
    make_user(APPROVER_PHONE, "Asha", "APPROVER")
    covering = make_project(manager=OTHER_PHONE, created_at=BASE_TIME + timedelta(days=20))
    own = make_project(manager=APPROVER_PHONE)
    invitations = TempApproverService(store)
    invitations.assign(covering, TempApproverAssign(
        approver_id=APPROVER_PHONE, start_date=BASE_TIME, end_date=BASE_TIME + timedelta(days=3),
    ), admin)

    synchronizer = ProjectSynchronizer(store, session_for(approver))
    subscription = await synchronizer.subscribe()
    assert [p.id for p in (await next_snapshot(subscription)).projects] == [covering, own]

    await asyncio.to_thread(invitations.reject, covering, approver, "travelling")

    assert [p.id for p in (await next_snapshot(subscription)).projects] == [own]
    assert [p.id for p in synchronizer.visible_projects] == [own]
    assert [p.id for p in list_visible_projects(store, approver).projects] == [own]
    synchronizer.close()


def test_decode_accepts_timestamps_with_and_without_a_zone():
    documents = [
        DocumentSnapshot("naive", PROJECTS, {
            "name": "naive", "status": "ACTIVE", "managerId": APPROVER_PHONE,
            "createdAt": "2025-01-02T09:00:00", "updatedAt": "2025-01-02T10:00:00",
        }),
        DocumentSnapshot("aware", PROJECTS, {
            "name": "aware", "status": "ACTIVE", "managerId": APPROVER_PHONE,
            "createdAt": "2025-01-03T09:00:00.000000+00:00",
        }),
        DocumentSnapshot("offset", PROJECTS, {
            "name": "offset", "status": "ACTIVE", "managerId": APPROVER_PHONE,
            "createdAt": "2025-01-02T12:00:00+05:30",
        }),
    ]

    projects, skipped = decode_projects(documents)

    assert skipped == 0
    # 12:00 at +05:30 is 06:30 UTC, before the naive 09:00
    assert [p.id for p in projects] == ["aware", "naive", "offset"]
    assert all(p.created_at.tzinfo is not None for p in projects)
    assert projects[1].updated_at == datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)
