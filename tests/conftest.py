import os
import tempfile

# The app module builds its engine at import time; keep it off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "avr_tracker_test.db"))

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from avr_tracker.core.config import get_settings
from avr_tracker.core.database import make_engine
from avr_tracker.models.base import Base
from avr_tracker.models import document, user, verification  # noqa: F401
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.document_store import DocumentStore, collection_path
from avr_tracker.services.identity import IdentityResolver
from avr_tracker.services.identity_provider import LocalIdentityProvider
from avr_tracker.services.session import SessionStore

BASE_TIME = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

ADMIN_EMAIL = get_settings().ADMIN_EMAIL
APPROVER_PHONE = "9000000001"
USER_PHONE = "9876543210"
OTHER_PHONE = "9111111111"


class SmsOutbox:
    """Collects the codes LocalIdentityProvider would have texted."""

    def __init__(self):
        self.sent = []

    def __call__(self, phone_number, code):
        self.sent.append((phone_number, code))

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def sms():
    return SmsOutbox()


@pytest.fixture
def provider(session_factory, sms):
    return LocalIdentityProvider(session_factory, sms_sender=sms)


@pytest.fixture
def resolver(provider, store):
    return IdentityResolver(provider, store)


@pytest.fixture
def admin():
    return AuthenticatedIdentity(identifier=ADMIN_EMAIL, display_name="Admin", role=UserRole.ADMIN, email=ADMIN_EMAIL)


@pytest.fixture
def approver():
    return AuthenticatedIdentity(identifier=APPROVER_PHONE, display_name="Asha", role=UserRole.APPROVER)


@pytest.fixture
def member():
    return AuthenticatedIdentity(identifier=USER_PHONE, display_name="Ravi", role=UserRole.USER)


def session_for(identity):
    session = SessionStore()
    session.publish(identity)
    return session


@pytest.fixture
def make_user(store):
    def _make(phone, name="Someone", role="USER", **extra):
        data = {"phoneNumber": phone, "name": name, "role": role, "isActive": True, "createdAt": BASE_TIME}
        data.update(extra)
        store.set_document(get_settings().USERS_COLLECTION, phone, data)
        return phone
    return _make


@pytest.fixture
def make_project(store):
    counter = {"n": 0}

    def _make(name=None, status="ACTIVE", team=(USER_PHONE,), manager=APPROVER_PHONE,
              departments=None, created_at=None, temp_approver=None):
        counter["n"] += 1
        departments = departments if departments is not None else {"Art": 1000.0, "Camera": 500.0}
        data = {
            "name": name or f"Project {counter['n']}",
            "description": "Shoot",
            "status": status,
            "teamMembers": list(team),
            "managerId": manager,
            "departments": departments,
            "budget": sum(departments.values()),
            "createdAt": created_at or BASE_TIME + timedelta(days=counter["n"]),
        }
        if temp_approver:
            data["tempApproverID"] = temp_approver
        return store.add_document(get_settings().PROJECTS_COLLECTION, data)
    return _make


@pytest.fixture
def make_expense(store):
    counter = {"n": 0}

    def _make(project_id, department="Art", amount=100.0, status="PENDING", created_at=None,
              date="15/01/2025", **extra):
        counter["n"] += 1
        data = {
            "projectId": project_id,
            "date": date,
            "amount": amount,
            "department": department,
            "categories": ["Props"],
            "description": "Hired props",
            "modeOfPayment": "By UPI",
            "submittedBy": USER_PHONE,
            "status": status,
            "createdAt": created_at or BASE_TIME + timedelta(hours=counter["n"]),
        }
        data.update(extra)
        settings = get_settings()
        collection = collection_path(settings.PROJECTS_COLLECTION, project_id, settings.EXPENSES_COLLECTION)
        return store.add_document(collection, data)
    return _make


async def eventually(condition, timeout=2.0):
    """Yield to the loop until ``condition()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def next_snapshot(subscription, timeout=2.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)
