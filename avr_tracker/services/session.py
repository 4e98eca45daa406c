"""Session Store: who is signed in on this client.

One instance is created by the application root and handed to whatever
needs identity. All mutation happens on the event loop the store is bound
to; ``publish`` called from another thread is redispatched onto it.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, List, Optional

from avr_tracker.core.errors import ProfileDecodeError, ProviderError, UserNotRegistered
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, persist_path: Optional[str] = None, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.identity: Optional[AuthenticatedIdentity] = None
        self.identifier: Optional[str] = None
        self._persist_path = Path(persist_path) if persist_path else None
        self._loop = loop
        self._listeners: List[Callable[["SessionStore"], None]] = []
        self._revalidation: Optional[asyncio.Task] = None

    @property
    def role(self) -> Optional[UserRole]:
        return self.identity.role if self.identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None and self.identity.is_recognized

    def bind(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    def add_listener(self, listener: Callable[["SessionStore"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _notify(self):
        for listener in list(self._listeners):
            listener(self)

    def _run_on_loop(self, func, *args):
        loop = self._loop
        if loop is None:
            func(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            func(*args)
        else:
            loop.call_soon_threadsafe(func, *args)

    def publish(self, identity: AuthenticatedIdentity):
        self._run_on_loop(self._apply, identity)

    def _apply(self, identity: Optional[AuthenticatedIdentity]):
        if identity is not None and not identity.is_recognized:
            logger.warning("Refusing session for %s: unrecognised role", identity.identifier)
            self._clear()
            return
        self.identity = identity
        self.identifier = identity.identifier if identity else None
        if self.identifier:
            self._persist(self.identifier)
        self._notify()

    async def restore(self, resolver) -> Optional[str]:
        """Start from the persisted identifier, then reload the profile.

        The identifier is available as soon as this returns; ``identity``
        fills in once the background revalidation completes.
        """
        if self._loop is None:
            self.bind()
        identifier = self._read_persisted()
        if not identifier:
            return None
        self.identifier = identifier
        self._notify()
        self._revalidation = asyncio.create_task(self._revalidate(resolver, identifier))
        return identifier

    async def wait_revalidated(self):
        if self._revalidation is not None:
            await asyncio.shield(self._revalidation)

    async def _revalidate(self, resolver, identifier: str):
        try:
            identity = await asyncio.to_thread(resolver.resolve_identifier, identifier)
        except (UserNotRegistered, ProfileDecodeError) as e:
            logger.warning("Saved session for %s is no longer valid: %s", identifier, e.message)
            if self.identifier == identifier:
                self._clear()
            return
        except ProviderError as e:
            # keep the stale identifier, the next restore tries again
            logger.warning("Could not reload profile for %s: %s", identifier, e.message)
            return

        if self.identifier != identifier:
            # logged out or switched user while the profile was loading
            return
        self._apply(identity)

    def logout(self):
        """Forget the signed-in user. Safe to call when nobody is signed in."""
        if self._revalidation is not None and not self._revalidation.done():
            self._revalidation.cancel()
        self._revalidation = None
        self._clear()

    def _clear(self):
        was_signed_in = self.identifier is not None or self.identity is not None
        self.identity = None
        self.identifier = None
        if self._persist_path is not None:
            try:
                self._persist_path.unlink(missing_ok=True)
            except OSError as e:
                logger.error("Could not remove session file %s: %s", self._persist_path, e)
        if was_signed_in:
            self._notify()

    def _persist(self, identifier: str):
        if self._persist_path is None:
            return
        try:
            self._persist_path.write_text(json.dumps({"identifier": identifier}))
        except OSError as e:
            logger.error("Could not save session to %s: %s", self._persist_path, e)

    def _read_persisted(self) -> Optional[str]:
        if self._persist_path is None or not self._persist_path.exists():
            return None
        try:
            return json.loads(self._persist_path.read_text()).get("identifier")
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable session file %s: %s", self._persist_path, e)
            return None
