from __future__ import annotations

import asyncio
import fnmatch
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from voxnote.app.domain.errors import DuplicateTranscriptError, RepositoryError
from voxnote.app.domain.models import (
    MediaPayload,
    NotificationPreferences,
    Subscription,
    SubscriptionStatus,
    SummaryLevel,
    Transcript,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptStatus,
    UsageDetail,
    UsageDetailKind,
    UsageMonth,
    UserProfile,
)
from voxnote.app.domain.plans import PlanTier
from voxnote.app.infra.db.base import (
    SubscriptionRepository,
    TranscriptRepository,
    UsageRepository,
    UserProfileRepository,
)
from voxnote.app.infra.messaging.base import (
    ClientEvent,
    ClientEventType,
    InboundMessage,
    MessagingClient,
)
from voxnote.app.services.media import MediaTools
from voxnote.services.errors import GeminiRequestError

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
FIXED_MONTH = "2026-03"


def fixed_clock() -> datetime:
    return FIXED_NOW


# =============================================================================
# Repositories
# =============================================================================

class SubscriptionRepositoryStub(SubscriptionRepository):
    def __init__(self) -> None:
        self.subscriptions: dict[str, Subscription] = {}

    def add(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.user_id] = subscription
        return subscription

    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(user_id)

    def list_active_user_ids(self) -> list[str]:
        return [
            user_id
            for user_id, subscription in self.subscriptions.items()
            if subscription.status == SubscriptionStatus.ACTIVE
        ]


class UserProfileRepositoryStub(UserProfileRepository):
    def __init__(self) -> None:
        self.profiles: dict[str, UserProfile] = {}
        self.calls = 0

    def add(self, profile: UserProfile) -> UserProfile:
        self.profiles[profile.user_id] = profile
        return profile

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        self.calls += 1
        return self.profiles.get(user_id)


class InMemoryUsageRepository(UsageRepository):
    """Ledger whose increments are atomic under a lock, like the store functions."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], UsageMonth] = {}
        self.fail_increments = False
        self._lock = threading.Lock()

    def preload(self, user_id: str, month: str, minutes: float = 0.0, summaries: int = 0) -> None:
        self.rows[(user_id, month)] = UsageMonth(
            user_id=user_id,
            month=month,
            total_minutes=minutes,
            summary_count=summaries,
        )

    def _row(self, user_id: str, month: str) -> UsageMonth:
        return self.rows.setdefault((user_id, month), UsageMonth(user_id=user_id, month=month))

    def get_month(self, user_id: str, month: str) -> UsageMonth:
        with self._lock:
            return replace(self._row(user_id, month))

    def increment_transcription(
        self,
        user_id: str,
        month: str,
        minutes: float,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        if self.fail_increments:
            raise RepositoryError("increment_transcription", "store unavailable")
        with self._lock:
            row = self._row(user_id, month)
            row.transcription_count += 1
            row.total_minutes += minutes
            row.transcription_cost += cost
            row.total_cost += cost
            row.details.append(UsageDetail(
                kind=UsageDetailKind.TRANSCRIPTION,
                cost=cost,
                transcript_id=transcript_id,
                seconds=minutes * 60,
            ))
            return replace(row)

    def increment_summary(
        self,
        user_id: str,
        month: str,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        if self.fail_increments:
            raise RepositoryError("increment_summary", "store unavailable")
        with self._lock:
            row = self._row(user_id, month)
            row.summary_count += 1
            row.summary_cost += cost
            row.total_cost += cost
            row.details.append(UsageDetail(
                kind=UsageDetailKind.SUMMARY,
                cost=cost,
                transcript_id=transcript_id,
            ))
            return replace(row)

    def mark_threshold_notified(self, user_id: str, month: str, threshold: int) -> bool:
        with self._lock:
            row = self._row(user_id, month)
            attribute = f"notified_at_{threshold}"
            if getattr(row, attribute):
                return False
            setattr(row, attribute, True)
            return True


class TranscriptRepositoryStub(TranscriptRepository):
    def __init__(self) -> None:
        self.transcripts: dict[str, Transcript] = {}
        self.failed: list[tuple[str, str, str]] = []
        self.reopened: list[str] = []
        self._lock = threading.Lock()

    def by_message(self, message_id: str) -> Optional[Transcript]:
        for transcript in self.transcripts.values():
            if transcript.message_id == message_id:
                return transcript
        return None

    def get_by_message_id(self, message_id: str) -> Optional[Transcript]:
        return self.by_message(message_id)

    def create_pending(self, transcript: Transcript) -> Transcript:
        with self._lock:
            if self.by_message(transcript.message_id) is not None:
                raise DuplicateTranscriptError(transcript.message_id)
            stored = replace(transcript, status=TranscriptStatus.PROCESSING)
            self.transcripts[stored.id] = stored
            return stored

    def reopen(self, transcript: Transcript) -> Transcript:
        with self._lock:
            current = self.transcripts[transcript.id]
            if current.status != TranscriptStatus.FAILED:
                raise DuplicateTranscriptError(transcript.message_id)
            self.reopened.append(transcript.id)
            stored = replace(current, status=TranscriptStatus.PROCESSING, error=None)
            self.transcripts[transcript.id] = stored
            return stored

    def mark_completed(
        self,
        transcript_id: str,
        text: str,
        summary: Optional[str],
        audio_length: float,
        language: Optional[str],
        confidence: Optional[float],
        segments: list[TranscriptionSegment],
        metadata: dict[str, Any],
    ) -> Transcript:
        stored = replace(
            self.transcripts[transcript_id],
            status=TranscriptStatus.COMPLETED,
            text=text,
            summary=summary,
            audio_length=audio_length,
            language=language,
            confidence=confidence,
            segments=list(segments),
            metadata=metadata,
        )
        self.transcripts[transcript_id] = stored
        return stored

    def mark_failed(self, transcript_id: str, error_message: str, code: str) -> None:
        self.failed.append((transcript_id, error_message, code))
        self.transcripts[transcript_id] = replace(
            self.transcripts[transcript_id],
            status=TranscriptStatus.FAILED,
            error={"message": error_message, "code": code},
        )


# =============================================================================
# Media, transcription, summaries
# =============================================================================

class MediaToolsStub(MediaTools):
    """Real temp-file handling; ffprobe and ffmpeg replaced."""

    def __init__(self, temp_dir: Path) -> None:
        super().__init__(temp_dir)
        self.duration = 120.0
        self.probe_error: Optional[Exception] = None
        self.convert_error: Optional[Exception] = None
        self.converted: list[Path] = []

    def probe_duration(self, path: Path) -> float:
        if self.probe_error is not None:
            raise self.probe_error
        return self.duration

    def convert_to_wav(self, path: Path) -> Path:
        if self.convert_error is not None:
            raise self.convert_error
        output = path.with_name(f"{path.stem}.converted.wav")
        output.write_bytes(b"RIFF")
        self.converted.append(output)
        return output


class TranscriberStub:
    def __init__(self) -> None:
        self.calls: list[tuple[Path, Optional[str]]] = []
        self.error: Optional[Exception] = None
        self.text = "Bonjour, rendez-vous demain à dix heures."
        self.language = "fr"
        self.barrier: Optional[threading.Barrier] = None

    def transcribe(self, audio_path: Path, language: Optional[str] = None) -> TranscriptionResult:
        self.calls.append((audio_path, language))
        if self.barrier is not None:
            self.barrier.wait()
        if self.error is not None:
            raise self.error
        return TranscriptionResult(
            text=self.text,
            segments=[TranscriptionSegment(start=0.0, end=4.0, text=self.text, confidence=0.9)],
            language=self.language,
            duration_sec=120.0,
            model_version="small",
            confidence=0.97,
        )


class SummaryClientStub:
    def __init__(self, answer: str = "Rendez-vous demain. A dix heures. Au bureau. Merci.") -> None:
        self.answer = answer
        self.fail = False
        self.calls: list[tuple[str, str]] = []

    def generate_content(self, user_prompt: str, system_instruction: str) -> str:
        self.calls.append((user_prompt, system_instruction))
        if self.fail:
            raise GeminiRequestError("Gemini request failed: quota")
        return self.answer


class MessengerStub:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send_message(self, user_id: str, target_id: str, text: str) -> None:
        if self.fail:
            raise ConnectionError("client gone")
        self.sent.append((user_id, target_id, text))


class SelfMessageSenderStub:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.sent: list[tuple[str, str]] = []

    async def send_to_self(self, user_id: str, text: str) -> bool:
        if not self.connected:
            return False
        self.sent.append((user_id, text))
        return True


class EmailSenderStub:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Any]] = []
        self.fail = False

    async def send_quota_alert(self, email: str, alert: Any) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((email, alert))


# =============================================================================
# Redis
# =============================================================================

class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio client."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.expiries: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key: str) -> Optional[bytes]:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: bytes, ex: Optional[int] = None) -> bool:
        self._check()
        self.store[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def delete(self, *keys: Any) -> int:
        self._check()
        removed = 0
        for key in keys:
            name = key.decode() if isinstance(key, bytes) else key
            if self.store.pop(name, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*", count: int = 100) -> AsyncIterator[bytes]:
        self._check()
        pattern = match.replace("\\", "")
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, pattern):
                yield key.encode()

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Messaging client
# =============================================================================

class FakeMessagingClient(MessagingClient):
    def __init__(self, user_id: str, credentials_dir: Path) -> None:
        self.user_id = user_id
        self.credentials_dir = credentials_dir
        self.queue: asyncio.Queue[Optional[ClientEvent]] = asyncio.Queue()
        self.init_error: Optional[Exception] = None
        self.on_initialize: list[ClientEvent] = []
        self.initialized = False
        self.logged_out = False
        self.destroyed = False
        self.sent: list[tuple[str, str]] = []
        self._self_id: Optional[str] = f"{user_id}@c.us"

    async def initialize(self) -> None:
        if self.init_error is not None:
            raise self.init_error
        self.initialized = True
        for event in self.on_initialize:
            self.queue.put_nowait(event)

    async def events(self) -> AsyncIterator[ClientEvent]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    def emit(self, event_type: ClientEventType, **values: Any) -> None:
        self.queue.put_nowait(ClientEvent(type=event_type, **values))

    def close_stream(self) -> None:
        self.queue.put_nowait(None)

    async def send_message(self, target_id: str, text: str) -> None:
        self.sent.append((target_id, text))

    async def logout(self) -> None:
        self.logged_out = True

    async def destroy(self) -> None:
        self.destroyed = True
        self.queue.put_nowait(None)

    @property
    def self_id(self) -> Optional[str]:
        return self._self_id


class FakeClientFactory:
    def __init__(self) -> None:
        self.clients: list[FakeMessagingClient] = []
        self.init_error: Optional[Exception] = None
        self.on_initialize: list[ClientEvent] = []

    def __call__(self, user_id: str, credentials_dir: Path) -> FakeMessagingClient:
        client = FakeMessagingClient(user_id, credentials_dir)
        client.init_error = self.init_error
        client.on_initialize = list(self.on_initialize)
        self.clients.append(client)
        return client

    def latest(self, user_id: str) -> FakeMessagingClient:
        return [client for client in self.clients if client.user_id == user_id][-1]


# =============================================================================
# Builders
# =============================================================================

def build_subscription(
    user_id: str = "user-1",
    tier: PlanTier = PlanTier.BASIC,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
) -> Subscription:
    if tier == PlanTier.TRIAL:
        subscription = Subscription.for_registration(user_id, now=FIXED_NOW - timedelta(days=1))
    else:
        subscription = Subscription.for_registration(user_id, now=FIXED_NOW - timedelta(days=40)).apply_plan(
            tier,
            period_start=FIXED_NOW - timedelta(days=10),
            period_end=FIXED_NOW + timedelta(days=20),
        )
    return replace(subscription, status=status)


def build_profile(
    user_id: str = "user-1",
    summary_level: SummaryLevel = SummaryLevel.NONE,
    **overrides: Any,
) -> UserProfile:
    values: dict[str, Any] = {
        "user_id": user_id,
        "email": f"{user_id}@example.com",
        "summary_level": summary_level,
        "summary_language": "fr",
        "notifications": NotificationPreferences(),
    }
    values.update(overrides)
    return UserProfile(**values)


def build_message(
    message_id: str = "msg-1",
    media: Optional[bytes] = b"OggS-voice-note",
    message_type: str = "ptt",
    download_error: Optional[Exception] = None,
) -> InboundMessage:
    downloads: list[int] = []

    async def fetch() -> Optional[MediaPayload]:
        downloads.append(1)
        if download_error is not None:
            raise download_error
        if media is None:
            return None
        return MediaPayload(data=media, mimetype="audio/ogg; codecs=opus")

    message = InboundMessage(
        id=message_id,
        from_id="33612345678@c.us",
        to_id="33698765432@c.us",
        type=message_type,
        has_media=media is not None or download_error is not None,
        timestamp=int(FIXED_NOW.timestamp()),
        fetch_media=fetch,
    )
    message.downloads = downloads  # type: ignore[attr-defined]
    return message


async def wait_until(predicate: Any, timeout: float = 2.0) -> None:
    """Poll until the predicate holds; background tasks need a few loop turns."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def subscriptions() -> SubscriptionRepositoryStub:
    return SubscriptionRepositoryStub()


@pytest.fixture
def profile_repo() -> UserProfileRepositoryStub:
    return UserProfileRepositoryStub()


@pytest.fixture
def usage_repo() -> InMemoryUsageRepository:
    return InMemoryUsageRepository()


@pytest.fixture
def transcripts() -> TranscriptRepositoryStub:
    return TranscriptRepositoryStub()


@pytest.fixture
def media(tmp_path: Path) -> MediaToolsStub:
    return MediaToolsStub(tmp_path / "temp")


@pytest.fixture
def transcriber() -> TranscriberStub:
    return TranscriberStub()


@pytest.fixture
def summary_client() -> SummaryClientStub:
    return SummaryClientStub()


@pytest.fixture
def messenger() -> MessengerStub:
    return MessengerStub()


@pytest.fixture
def email_sender() -> EmailSenderStub:
    return EmailSenderStub()


@pytest.fixture
def self_sender() -> SelfMessageSenderStub:
    return SelfMessageSenderStub()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()
