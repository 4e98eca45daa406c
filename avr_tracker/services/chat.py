"""Expense chat: a thread of messages attached to one expense.

Messages live at projects/{projectId}/expenses/{expenseId}/expenseChats/{id}
and are shown oldest first. ``listen`` opens a live thread that re-delivers
the whole message list after every new message, the same way the project
subscription works.
"""
import asyncio
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import AppError, PermissionDenied, ValidationError
from avr_tracker.core.phone import normalize_phone
from avr_tracker.schemas.chat import ExpenseChat
from avr_tracker.schemas.project import Project
from avr_tracker.services.document_store import DocumentStore, Query, collection_path, server_timestamp
from avr_tracker.services.expenses import ExpenseService
from avr_tracker.services.projects import can_view_project

logger = logging.getLogger(__name__)

_CLOSED = object()


def chats_collection(project_id: str, expense_id: str) -> str:
    settings = get_settings()
    return collection_path(
        settings.PROJECTS_COLLECTION, project_id,
        settings.EXPENSES_COLLECTION, expense_id,
        settings.EXPENSE_CHATS_COLLECTION,
    )


def decode_messages(documents) -> Tuple[List[ExpenseChat], int]:
    """Oldest first. Messages that do not decode are left out and counted."""
    messages, skipped = [], 0
    for document in documents:
        try:
            message = ExpenseChat.model_validate(document.data)
        except PydanticValidationError as e:
            skipped += 1
            logger.warning("Skipping malformed chat message %s: %s", document.path, e.errors()[0].get("msg"))
            continue
        message.id = document.id
        messages.append(message)
    messages.sort(key=lambda m: m.time_stamp)
    return messages, skipped


def clean_mentions(mention) -> List[str]:
    seen = []
    for value in mention or []:
        canonical = normalize_phone(value)
        if canonical and canonical not in seen:
            seen.append(canonical)
    return seen


class ChatThread:
    """Async iterator over the message lists of one expense."""

    def __init__(self, project_id: str, expense_id: str):
        self.project_id = project_id
        self.expense_id = expense_id
        self.registration = None
        self.messages: List[ExpenseChat] = []
        self.skipped = 0
        self.last_error: Optional[AppError] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _put(self, messages: List[ExpenseChat], skipped: int, error):
        if self._cancelled:
            return
        if error is not None:
            self.last_error = error
            logger.error("Chat of expense %s failed: %s", self.expense_id, error)
            return
        self.last_error = None
        self.messages = messages
        self.skipped = skipped
        self._queue.put_nowait(messages)

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        if self.registration is not None:
            self.registration.remove()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> List[ExpenseChat]:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class ExpenseChatService:
    def __init__(self, store: DocumentStore, session):
        self.store = store
        self.session = session

    def _identity(self, project: Project):
        identity = self.session.identity
        if identity is None:
            raise PermissionDenied("User not logged in.")
        if not can_view_project(identity, project):
            raise PermissionDenied("You do not have access to this project")
        return identity

    def post_message(self, project: Project, expense_id: str, text: str, mention=None) -> ExpenseChat:
        identity = self._identity(project)
        if not text or not text.strip():
            raise ValidationError("Message cannot be empty")
        # raises NotFound for an unknown expense
        ExpenseService(self.store, self.session).get(project.id, expense_id)

        message = ExpenseChat(
            text_message=text.strip(),
            time_stamp=server_timestamp(),
            mention=clean_mentions(mention),
            sender_id=normalize_phone(identity.identifier),
            sender_role=identity.role,
        )
        message.id = self.store.add_document(
            chats_collection(project.id, expense_id), message.model_dump(by_alias=True, exclude={"id"})
        )
        logger.info("%s wrote on expense %s of project %s", message.sender_id, expense_id, project.id)
        return message

    def list_messages(self, project: Project, expense_id: str) -> List[ExpenseChat]:
        self._identity(project)
        query = Query(chats_collection(project.id, expense_id)).order("timeStamp")
        messages, _ = decode_messages(self.store.query(query))
        return messages

    async def listen(self, project: Project, expense_id: str) -> ChatThread:
        """Open the live thread. The current messages arrive as the first item."""
        self._identity(project)
        await asyncio.to_thread(ExpenseService(self.store, self.session).get, project.id, expense_id)

        loop = asyncio.get_running_loop()
        thread = ChatThread(project.id, expense_id)
        query = Query(chats_collection(project.id, expense_id)).order("timeStamp")

        def on_delivery(documents, error):
            # runs on the thread that wrote the message
            if thread.cancelled:
                return
            messages, skipped = decode_messages(documents) if documents is not None else ([], 0)
            try:
                loop.call_soon_threadsafe(thread._put, messages, skipped, error)
            except RuntimeError:
                logger.debug("Event loop closed, dropping chat delivery")

        registration = await asyncio.to_thread(self.store.listen, query, on_delivery)
        if thread.cancelled:
            registration.remove()
        else:
            thread.registration = registration
        return thread
