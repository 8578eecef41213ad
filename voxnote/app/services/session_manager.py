# voxnote/app/services/session_manager.py
"""
Registry of per-user messaging sessions.

One handle per user at most. Connect, logout and every teardown for a user
run under that user's lock; the event pump of a handle only acts while the
handle is still the registered one, so events from a replaced client are
dropped.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from starlette.concurrency import run_in_threadpool

from voxnote.app.domain.errors import (
    PairingUnavailableError,
    SessionInitializationError,
    SessionNotReadyError,
)
from voxnote.app.domain.models import PairingResult, SessionHandle, SessionState
from voxnote.app.infra.cache.two_tier import STRATEGY_PAIRING, STRATEGY_SESSION, TwoTierCache
from voxnote.app.infra.messaging.base import (
    ClientEvent,
    ClientEventType,
    InboundMessage,
    MessagingClientFactory,
)
from voxnote.app.services import replies
from voxnote.app.services.pairing import render_pairing_qr
from voxnote.services.errors import QRRenderError

logger = logging.getLogger(__name__)

VoiceNoteHandler = Callable[[str, InboundMessage], Awaitable[None]]

STATUS_CONNECTED = "connected"
STATUS_PENDING = "pending"
STATUS_INITIALIZING = "initializing"

TASK_STOP_TIMEOUT_SECONDS = 5.0


class SessionManager:
    def __init__(
        self,
        client_factory: MessagingClientFactory,
        sessions_root: str | Path,
        cache: Optional[TwoTierCache] = None,
        on_voice_note: Optional[VoiceNoteHandler] = None,
        pairing_poll_attempts: int = 15,
        pairing_poll_interval: float = 1.0,
        welcome_language: str = "fr",
    ):
        self._factory = client_factory
        self._sessions_root = Path(sessions_root)
        self._cache = cache or TwoTierCache()
        self._on_voice_note = on_voice_note
        self._poll_attempts = pairing_poll_attempts
        self._poll_interval = pairing_poll_interval
        self._welcome_language = welcome_language
        self._handles: dict[str, SessionHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def set_voice_note_handler(self, handler: VoiceNoteHandler) -> None:
        self._on_voice_note = handler

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def credentials_dir(self, user_id: str) -> Path:
        return self._sessions_root / f"session-{user_id}"

    # =========================================================================
    # Reads
    # =========================================================================

    def get_state(self, user_id: str) -> SessionState:
        handle = self._handles.get(user_id)
        return handle.state if handle is not None else SessionState.NONE

    def is_connected(self, user_id: str) -> bool:
        handle = self._handles.get(user_id)
        return handle is not None and handle.is_ready

    def active_user_ids(self) -> list[str]:
        return list(self._handles)

    def get_connection_status(self, user_id: str) -> dict[str, bool]:
        return {"connected": self.is_connected(user_id)}

    async def get_pairing_artifact(self, user_id: str) -> PairingResult:
        handle = self._handles.get(user_id)
        if handle is not None and handle.is_ready:
            return PairingResult(status=STATUS_CONNECTED)

        if handle is not None and handle.pairing_artifact:
            return PairingResult(status=STATUS_PENDING, artifact=handle.pairing_artifact)

        if handle is None or handle.state in (SessionState.INITIALIZING, SessionState.PAIRING_PENDING):
            # another process may own the session and have published its code
            cached = await self._cache.get(STRATEGY_PAIRING, user_id)
            if cached:
                return PairingResult(status=STATUS_PENDING, artifact=cached)

        return PairingResult(status=STATUS_INITIALIZING)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self, user_id: str) -> SessionState:
        """
        Start a session for the user, or return at once if one is ready.

        Returns once the client has begun initializing; pairing and
        readiness arrive later as events.

        Raises:
            SessionInitializationError: If the client could not start
        """
        async with self._user_lock(user_id):
            existing = self._handles.get(user_id)
            if existing is not None and existing.is_ready:
                return existing.state

            if existing is not None:
                await self._teardown(existing, remove_credentials=False, reason="replaced")

            credentials_dir = self.credentials_dir(user_id)
            handle: Optional[SessionHandle] = None
            try:
                credentials_dir.mkdir(parents=True, exist_ok=True)
                client = self._factory(user_id, credentials_dir)
                handle = SessionHandle(user_id=user_id, client=client)
                handle.transition(SessionState.INITIALIZING)
                self._handles[user_id] = handle
                handle.event_task = asyncio.create_task(
                    self._pump_events(handle),
                    name=f"session-events-{user_id}",
                )
                await client.initialize()
            except Exception as error:
                logger.error("session.init_failed user=%s error=%s", user_id, error)
                if handle is not None:
                    await self._teardown(handle, remove_credentials=False, reason="init_failed")
                raise SessionInitializationError(user_id, str(error)) from error

            logger.info("session.initializing user=%s", user_id)
            await self._publish(handle)
            return handle.state

    async def request_pairing_artifact(self, user_id: str) -> PairingResult:
        """
        Return a pairing code, creating the session if needed and waiting
        a bounded time for the client to emit one.

        Raises:
            PairingUnavailableError: If the session died while waiting
        """
        result = await self.get_pairing_artifact(user_id)
        if result.status != STATUS_INITIALIZING:
            return result

        if user_id not in self._handles:
            await self.connect(user_id)

        for _ in range(self._poll_attempts):
            await asyncio.sleep(self._poll_interval)
            if user_id not in self._handles:
                raise PairingUnavailableError(user_id)
            result = await self.get_pairing_artifact(user_id)
            if result.status != STATUS_INITIALIZING:
                return result

        return PairingResult(status=STATUS_INITIALIZING, message="Pairing code is being generated")

    async def logout(self, user_id: str) -> None:
        """Sign out if possible, then drop the handle and stored credentials. Safe without a session."""
        async with self._user_lock(user_id):
            handle = self._handles.get(user_id)
            if handle is None:
                await self._purge(user_id, remove_credentials=True)
                logger.info("session.logout user=%s handle=none", user_id)
                return

            try:
                await handle.client.logout()
            except Exception as error:
                logger.debug("session.logout_failed user=%s error=%s", user_id, error)

            await self._teardown(handle, remove_credentials=True, reason="logout")

    async def disconnect(self, user_id: str) -> dict[str, bool]:
        await self.logout(user_id)
        return {"success": True}

    async def restore_sessions(self) -> int:
        """Reconnect every user with stored credentials. Returns how many started."""
        if not self._sessions_root.is_dir():
            return 0

        restored = 0
        for path in sorted(self._sessions_root.glob("session-*")):
            user_id = path.name[len("session-"):]
            if not path.is_dir() or not user_id:
                continue
            try:
                await self.connect(user_id)
                restored += 1
            except SessionInitializationError as error:
                logger.warning("session.restore_failed user=%s error=%s", user_id, error)
        logger.info("session.restored count=%d", restored)
        return restored

    async def shutdown(self) -> None:
        """Stop every client but keep credentials so sessions restore on next start."""
        for user_id in list(self._handles):
            async with self._user_lock(user_id):
                handle = self._handles.get(user_id)
                if handle is not None:
                    await self._teardown(handle, remove_credentials=False, reason="shutdown")
        logger.info("session.shutdown_complete")

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send_message(self, user_id: str, target_id: str, text: str) -> None:
        handle = self._handles.get(user_id)
        if handle is None or not handle.is_ready:
            raise SessionNotReadyError(user_id)
        await handle.client.send_message(target_id, text)

    async def send_to_self(self, user_id: str, text: str) -> bool:
        handle = self._handles.get(user_id)
        if handle is None or not handle.is_ready or not handle.client.self_id:
            return False
        await handle.client.send_message(handle.client.self_id, text)
        return True

    # =========================================================================
    # Events
    # =========================================================================

    async def _pump_events(self, handle: SessionHandle) -> None:
        try:
            async for event in handle.client.events():
                if self._handles.get(handle.user_id) is not handle:
                    return
                await self._handle_event(handle, event)
                if handle.state == SessionState.DISCONNECTED:
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session.event_stream_failed user=%s", handle.user_id)

        # stream ended while the handle was still live
        await self._terminate(handle, reason="event_stream_closed")

    async def _handle_event(self, handle: SessionHandle, event: ClientEvent) -> None:
        user_id = handle.user_id

        if event.type == ClientEventType.LOADING:
            logger.debug("session.loading user=%s", user_id)

        elif event.type == ClientEventType.PAIRING_CODE:
            await self._on_pairing_code(handle, event.pairing_code or "")

        elif event.type == ClientEventType.AUTHENTICATED:
            if handle.can_transition(SessionState.AUTHENTICATED):
                handle.transition(SessionState.AUTHENTICATED)
                handle.pairing_artifact = None
                await self._cache.delete(STRATEGY_PAIRING, user_id)
                await self._publish(handle)
                logger.info("session.authenticated user=%s", user_id)

        elif event.type == ClientEventType.READY:
            await self._on_ready(handle)

        elif event.type == ClientEventType.AUTH_FAILURE:
            logger.error("session.auth_failure user=%s reason=%s", user_id, event.reason)
            await self._terminate(handle, reason="auth_failure")

        elif event.type == ClientEventType.DISCONNECTED:
            logger.warning("session.disconnected user=%s reason=%s", user_id, event.reason)
            await self._terminate(handle, reason=event.reason or "disconnected")

        elif event.type == ClientEventType.MESSAGE and event.message is not None:
            await self._on_message(handle, event.message)

    async def _on_pairing_code(self, handle: SessionHandle, code: str) -> None:
        if not handle.can_transition(SessionState.PAIRING_PENDING):
            logger.debug("session.pairing_code_ignored user=%s state=%s", handle.user_id, handle.state.value)
            return

        try:
            artifact = render_pairing_qr(code)
        except QRRenderError as error:
            logger.error("session.qr_render_failed user=%s error=%s", handle.user_id, error)
            return

        handle.transition(SessionState.PAIRING_PENDING)
        handle.pairing_artifact = artifact
        await self._cache.set(STRATEGY_PAIRING, handle.user_id, artifact)
        await self._publish(handle)
        logger.info("session.pairing_pending user=%s", handle.user_id)

    async def _on_ready(self, handle: SessionHandle) -> None:
        if handle.is_ready:
            return
        # restored credentials may report ready without a separate authenticated event
        if handle.state != SessionState.AUTHENTICATED and handle.can_transition(SessionState.AUTHENTICATED):
            handle.transition(SessionState.AUTHENTICATED)
        if not handle.can_transition(SessionState.READY):
            logger.warning("session.ready_ignored user=%s state=%s", handle.user_id, handle.state.value)
            return

        handle.transition(SessionState.READY)
        handle.pairing_artifact = None
        await self._cache.delete(STRATEGY_PAIRING, handle.user_id)
        await self._publish(handle)
        logger.info("session.ready user=%s", handle.user_id)

        try:
            await self.send_to_self(handle.user_id, replies.text("welcome", self._welcome_language))
        except Exception as error:
            logger.debug("session.welcome_failed user=%s error=%s", handle.user_id, error)

    async def _on_message(self, handle: SessionHandle, message: InboundMessage) -> None:
        if not handle.is_ready or not message.is_voice_note:
            return
        if self._on_voice_note is None:
            logger.warning("session.voice_note_dropped user=%s message=%s reason=no_handler",
                           handle.user_id, message.id)
            return

        logger.info("session.voice_note user=%s message=%s from=%s", handle.user_id, message.id, message.from_id)
        try:
            await self._on_voice_note(handle.user_id, message)
        except Exception:
            logger.exception("session.voice_note_handoff_failed user=%s message=%s", handle.user_id, message.id)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def _terminate(self, handle: SessionHandle, reason: str) -> None:
        async with self._user_lock(handle.user_id):
            if self._handles.get(handle.user_id) is not handle:
                return
            await self._teardown(handle, remove_credentials=True, reason=reason)

    async def _teardown(self, handle: SessionHandle, remove_credentials: bool, reason: str) -> None:
        """Caller holds the user's lock."""
        user_id = handle.user_id
        if self._handles.get(user_id) is handle:
            del self._handles[user_id]

        if handle.state != SessionState.DISCONNECTED:
            handle.transition(SessionState.DISCONNECTED)
        handle.pairing_artifact = None

        task = handle.event_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=TASK_STOP_TIMEOUT_SECONDS)

        try:
            await handle.client.destroy()
        except Exception as error:
            logger.debug("session.destroy_failed user=%s error=%s", user_id, error)

        await self._purge(user_id, remove_credentials)
        logger.info("session.teardown user=%s reason=%s credentials_removed=%s", user_id, reason, remove_credentials)

    async def _purge(self, user_id: str, remove_credentials: bool) -> None:
        await self._cache.delete(STRATEGY_PAIRING, user_id)
        await self._cache.delete(STRATEGY_SESSION, user_id)
        if remove_credentials:
            await run_in_threadpool(shutil.rmtree, self.credentials_dir(user_id), ignore_errors=True)

    async def _publish(self, handle: SessionHandle) -> None:
        await self._cache.set(STRATEGY_SESSION, handle.user_id, handle.to_metadata())
