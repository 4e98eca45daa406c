import asyncio

import pytest

from avr_tracker.core.errors import NotFound, PermissionDenied, ValidationError
from avr_tracker.schemas.user import UserRole
from avr_tracker.services.chat import ExpenseChatService, chats_collection, clean_mentions, decode_messages
from avr_tracker.services.document_store import DocumentSnapshot, Query
from avr_tracker.services.project_admin import ProjectService

from conftest import ADMIN_EMAIL, APPROVER_PHONE, OTHER_PHONE, USER_PHONE, next_snapshot, session_for


@pytest.fixture
def thread(store, make_project, make_expense):
    project_id = make_project()
    return ProjectService(store).get(project_id), make_expense(project_id)


def test_chats_collection():
    assert chats_collection("p1", "e1") == "projects/p1/expenses/e1/expenseChats"


def test_clean_mentions():
    assert clean_mentions(["+91" + USER_PHONE, USER_PHONE, " ", APPROVER_PHONE]) == [USER_PHONE, APPROVER_PHONE]
    assert clean_mentions(None) == []


def test_decode_orders_oldest_first_and_skips_bad_messages():
    def doc(doc_id, **data):
        base = {"textMessage": doc_id, "senderId": USER_PHONE, "senderRole": "USER"}
        base.update(data)
        return DocumentSnapshot(doc_id, "chats", base)

    messages, skipped = decode_messages([
        doc("second", timeStamp="2025-01-01T10:00:00.000000+00:00"),
        doc("no-time"),
        doc("first", timeStamp="2025-01-01T09:00:00"),
    ])

    assert [m.id for m in messages] == ["first", "second"]
    assert skipped == 1


def test_post_message_records_sender(store, thread, member):
    project, expense_id = thread
    service = ExpenseChatService(store, session_for(member))

    message = service.post_message(project, expense_id, "  Is this the sofa?  ", ["+91" + APPROVER_PHONE])

    stored = store.get_document(chats_collection(project.id, expense_id), message.id).data
    assert stored["textMessage"] == "Is this the sofa?"
    assert stored["senderId"] == USER_PHONE
    assert stored["senderRole"] == "USER"
    assert stored["mention"] == [APPROVER_PHONE]
    assert stored["mediaURL"] == []
    assert "timeStamp" in stored


def test_admin_messages_carry_the_admin_role(store, thread, admin):
    project, expense_id = thread
    message = ExpenseChatService(store, session_for(admin)).post_message(project, expense_id, "Approved soon")

    assert message.sender_id == ADMIN_EMAIL
    assert message.sender_role is UserRole.ADMIN


def test_messages_are_listed_in_order(store, thread, member, approver):
    project, expense_id = thread
    ExpenseChatService(store, session_for(member)).post_message(project, expense_id, "Receipt attached")
    ExpenseChatService(store, session_for(approver)).post_message(project, expense_id, "Thanks")

    messages = ExpenseChatService(store, session_for(member)).list_messages(project, expense_id)

    assert [m.text_message for m in messages] == ["Receipt attached", "Thanks"]
    assert [m.sender_role for m in messages] == [UserRole.USER, UserRole.APPROVER]


def test_bad_messages_never_reach_the_store(store, thread, member):
    project, expense_id = thread
    service = ExpenseChatService(store, session_for(member))

    with pytest.raises(ValidationError):
        service.post_message(project, expense_id, "   ")
    with pytest.raises(NotFound):
        service.post_message(project, "nope", "Hello")
    assert store.query(Query(chats_collection(project.id, expense_id))) == []
    assert service.list_messages(project, expense_id) == []


def test_outsiders_cannot_read_or_write(store, make_project, make_expense, member):
    project_id = make_project(team=(OTHER_PHONE,))
    project = ProjectService(store).get(project_id)
    expense_id = make_expense(project_id)
    service = ExpenseChatService(store, session_for(member))

    with pytest.raises(PermissionDenied):
        service.post_message(project, expense_id, "Hello")
    with pytest.raises(PermissionDenied):
        service.list_messages(project, expense_id)


@pytest.mark.asyncio
async def test_live_thread_redelivers_after_each_message(store, thread, member, approver):
    project, expense_id = thread
    ExpenseChatService(store, session_for(member)).post_message(project, expense_id, "First")
    chat = await ExpenseChatService(store, session_for(approver)).listen(project, expense_id)

    assert [m.text_message for m in await next_snapshot(chat)] == ["First"]

    await asyncio.to_thread(
        ExpenseChatService(store, session_for(approver)).post_message, project, expense_id, "Second", [USER_PHONE]
    )

    messages = await next_snapshot(chat)
    assert [m.text_message for m in messages] == ["First", "Second"]
    assert messages[1].mention == [USER_PHONE]
    assert chat.messages == messages
    chat.cancel()


@pytest.mark.asyncio
async def test_cancelled_thread_stops_listening(store, thread, member):
    project, expense_id = thread
    service = ExpenseChatService(store, session_for(member))
    before = store.listener_count()
    chat = await service.listen(project, expense_id)
    await next_snapshot(chat)
    assert store.listener_count() == before + 1

    chat.cancel()
    chat.cancel()
    await asyncio.to_thread(service.post_message, project, expense_id, "Too late")

    assert store.listener_count() == before
    assert [m async for m in chat] == []


@pytest.mark.asyncio
async def test_listening_to_an_unknown_expense(store, thread, member):
    project, _ = thread
    with pytest.raises(NotFound):
        await ExpenseChatService(store, session_for(member)).listen(project, "nope")
