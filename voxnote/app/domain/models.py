# voxnote/app/domain/models.py
"""
Domain models for sessions, subscriptions, usage and transcripts.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from voxnote.app.domain.errors import InvalidSessionTransitionError
from voxnote.app.domain.plans import (
    TRIAL_DAYS,
    PlanFeatures,
    PlanLimits,
    PlanTier,
    get_plan,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_month(now: Optional[datetime] = None) -> str:
    """Ledger month key, YYYY-MM."""
    return (now or utcnow()).strftime("%Y-%m")


# =============================================================================
# Sessions
# =============================================================================

class SessionState(str, Enum):
    NONE = "NONE"
    INITIALIZING = "INITIALIZING"
    PAIRING_PENDING = "PAIRING_PENDING"
    AUTHENTICATED = "AUTHENTICATED"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"


SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NONE: frozenset({SessionState.INITIALIZING, SessionState.DISCONNECTED}),
    SessionState.INITIALIZING: frozenset({
        SessionState.PAIRING_PENDING,
        SessionState.AUTHENTICATED,  # restored credentials skip pairing
        SessionState.DISCONNECTED,
    }),
    SessionState.PAIRING_PENDING: frozenset({
        SessionState.PAIRING_PENDING,  # refreshed pairing code
        SessionState.AUTHENTICATED,
        SessionState.DISCONNECTED,
    }),
    SessionState.AUTHENTICATED: frozenset({SessionState.READY, SessionState.DISCONNECTED}),
    SessionState.READY: frozenset({SessionState.DISCONNECTED}),
    SessionState.DISCONNECTED: frozenset(),
}


@dataclass(eq=False)
class SessionHandle:
    """
    Runtime state of one user's messaging connection.
    Never persisted; only the client's credential directory survives restarts.
    """
    user_id: str
    client: Any
    state: SessionState = SessionState.NONE
    pairing_artifact: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    event_task: Any = None

    def can_transition(self, target: SessionState) -> bool:
        return target in SESSION_TRANSITIONS[self.state]

    def transition(self, target: SessionState) -> None:
        if not self.can_transition(target):
            raise InvalidSessionTransitionError(self.state.value, target.value)
        self.state = target
        self.updated_at = utcnow()

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    def to_metadata(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class PairingResult:
    """Upward-facing answer to a pairing request."""
    status: str  # pending | connected | initializing
    artifact: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.artifact is not None:
            data["qr"] = self.artifact
        if self.message is not None:
            data["message"] = self.message
        return data


# =============================================================================
# Subscriptions
# =============================================================================

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAST_DUE = "past_due"


@dataclass
class Subscription:
    user_id: str
    plan: PlanTier
    status: SubscriptionStatus
    limits: PlanLimits
    features: PlanFeatures
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def for_registration(cls, user_id: str, now: Optional[datetime] = None) -> "Subscription":
        start = now or utcnow()
        plan = get_plan(PlanTier.TRIAL)
        return cls(
            user_id=user_id,
            plan=PlanTier.TRIAL,
            status=SubscriptionStatus.ACTIVE,
            limits=plan.limits,
            features=plan.features,
            trial_start=start,
            trial_end=start + timedelta(days=TRIAL_DAYS),
        )

    def apply_plan(
        self,
        tier: PlanTier,
        period_start: datetime,
        period_end: datetime,
    ) -> "Subscription":
        plan = get_plan(tier)
        return replace(
            self,
            plan=plan.tier,
            status=SubscriptionStatus.ACTIVE,
            limits=plan.limits,
            features=plan.features,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
        )

    @property
    def is_trial(self) -> bool:
        return self.plan == PlanTier.TRIAL

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.status != SubscriptionStatus.ACTIVE:
            return False

        moment = now or utcnow()
        if self.is_trial:
            return self.trial_end is not None and moment < self.trial_end

        return self.current_period_end is not None and moment < self.current_period_end

    def can_use_feature(self, feature: str, now: Optional[datetime] = None) -> bool:
        return self.is_active(now) and bool(getattr(self.features, feature, False))

    def remaining_trial_days(self, now: Optional[datetime] = None) -> int:
        if not self.is_trial or self.trial_end is None:
            return 0
        remaining = self.trial_end - (now or utcnow())
        seconds = remaining.total_seconds()
        if seconds <= 0:
            return 0
        return math.ceil(seconds / 86400)


# =============================================================================
# User profile (read-only input from the user store)
# =============================================================================

class SummaryLevel(str, Enum):
    NONE = "none"
    CONCISE = "concise"
    DETAILED = "detailed"


@dataclass
class NotificationPreferences:
    usage_alerts: bool = True
    email: bool = True
    whatsapp: bool = True


@dataclass
class UserProfile:
    user_id: str
    email: Optional[str] = None
    transcription_language: str = "auto"
    summary_level: SummaryLevel = SummaryLevel.NONE
    summary_language: str = "fr"
    separate_conversation: bool = False
    notifications: NotificationPreferences = field(default_factory=NotificationPreferences)

    @property
    def language_hint(self) -> Optional[str]:
        """None asks the transcriber to auto-detect."""
        if not self.transcription_language or self.transcription_language == "auto":
            return None
        return self.transcription_language


# =============================================================================
# Usage ledger
# =============================================================================

class UsageDetailKind(str, Enum):
    TRANSCRIPTION = "transcription"
    SUMMARY = "summary"


@dataclass
class UsageDetail:
    kind: UsageDetailKind
    cost: float
    transcript_id: Optional[str] = None
    seconds: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass
class UsageMonth:
    """One ledger row: consumption of one user in one calendar month."""
    user_id: str
    month: str  # YYYY-MM
    transcription_count: int = 0
    total_minutes: float = 0.0
    transcription_cost: float = 0.0
    summary_count: int = 0
    summary_cost: float = 0.0
    total_cost: float = 0.0
    notified_at_80: bool = False
    notified_at_100: bool = False
    details: list[UsageDetail] = field(default_factory=list)


@dataclass
class QuotaSnapshot:
    minutes_limit: float
    minutes_used: float
    summaries_limit: int
    summaries_used: int

    @property
    def minutes_remaining(self) -> float:
        return max(0.0, self.minutes_limit - self.minutes_used)

    @property
    def summaries_remaining(self) -> int:
        return max(0, self.summaries_limit - self.summaries_used)

    @property
    def used_percent(self) -> int:
        if self.minutes_limit <= 0:
            return 100
        return round(self.minutes_used / self.minutes_limit * 100)


# =============================================================================
# Transcripts
# =============================================================================

class TranscriptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TranscriptionSegment:
    """A segment of transcribed audio with timing information."""
    start: float  # seconds
    end: float    # seconds
    text: str
    confidence: Optional[float] = None


@dataclass
class TranscriptionResult:
    """Result of a transcription operation."""
    text: str
    segments: list[TranscriptionSegment]
    language: str
    duration_sec: float
    model_version: str
    confidence: Optional[float] = None


@dataclass
class MediaPayload:
    """Raw media fetched from the messaging collaborator."""
    data: bytes
    mimetype: str = "audio/ogg"
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class Transcript:
    id: str
    user_id: str
    message_id: str
    status: TranscriptStatus = TranscriptStatus.PENDING
    text: str = ""
    summary: Optional[str] = None
    audio_length: float = 0.0
    language: Optional[str] = None
    confidence: Optional[float] = None
    segments: list[TranscriptionSegment] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TranscriptStatus.COMPLETED, TranscriptStatus.FAILED)

    @property
    def blocks_reprocessing(self) -> bool:
        """A failed transcript may be retried; anything else is a duplicate delivery."""
        return self.status != TranscriptStatus.FAILED
