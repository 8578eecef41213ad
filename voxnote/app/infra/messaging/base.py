# voxnote/app/infra/messaging/base.py
"""
Capability interface for the browser-automated messaging client.

The protocol itself lives outside this project. A concrete client wraps the
automation engine, stores its credentials in the directory it is given, and
reports everything it observes as ``ClientEvent`` values.
"""
from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

from voxnote.app.domain.models import MediaPayload

VOICE_NOTE_TYPE = "ptt"


class ClientEventType(str, Enum):
    LOADING = "loading"
    PAIRING_CODE = "pairing_code"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    READY = "ready"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


@dataclass
class InboundMessage:
    id: str
    from_id: str
    to_id: str
    type: str
    has_media: bool
    timestamp: int  # unix seconds
    fetch_media: Callable[[], Awaitable[Optional[MediaPayload]]]

    @property
    def is_voice_note(self) -> bool:
        return self.has_media and self.type == VOICE_NOTE_TYPE

    async def download_media(self) -> Optional[MediaPayload]:
        return await self.fetch_media()


@dataclass
class ClientEvent:
    type: ClientEventType
    pairing_code: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[InboundMessage] = None


class MessagingClient(ABC):
    """One user's connection to the messaging network."""

    @abstractmethod
    async def initialize(self) -> None:
        """Start the automation engine. Returns once startup has begun."""

    @abstractmethod
    def events(self) -> AsyncIterator[ClientEvent]:
        """Stream of connection and message events; ends when the client stops."""

    @abstractmethod
    async def send_message(self, target_id: str, text: str) -> None:
        pass

    @abstractmethod
    async def logout(self) -> None:
        """Sign out of the account, invalidating stored credentials."""

    @abstractmethod
    async def destroy(self) -> None:
        """Stop the automation engine without signing out."""

    @property
    @abstractmethod
    def self_id(self) -> Optional[str]:
        """Chat id of the connected account itself, once known."""


class MessagingClientFactory(Protocol):
    def __call__(self, user_id: str, credentials_dir: Path) -> MessagingClient: ...


def load_client_factory(path: str) -> MessagingClientFactory:
    """Resolve a ``package.module:callable`` path to a client factory."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)
