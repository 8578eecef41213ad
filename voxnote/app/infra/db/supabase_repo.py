from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from voxnote.app.config import get_settings
from voxnote.app.domain.errors import DuplicateTranscriptError, RepositoryError
from voxnote.app.domain.models import (
    NotificationPreferences,
    Subscription,
    SubscriptionStatus,
    SummaryLevel,
    Transcript,
    TranscriptionSegment,
    TranscriptStatus,
    UsageDetail,
    UsageDetailKind,
    UsageMonth,
    UserProfile,
    utcnow,
)
from voxnote.app.domain.plans import PlanFeatures, PlanLimits, PlanTier, get_plan
from voxnote.app.infra.db.base import (
    SubscriptionRepository,
    TranscriptRepository,
    UsageRepository,
    UserProfileRepository,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
STORE_ERRORS = (APIError, ConnectionError, TimeoutError, httpx.HTTPError)


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _safe_float(value: object, default: float = 0.0) -> float:
    return float(value) if value is not None else default


def _safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default


def _limit(value: object, default: int) -> int:
    return default if value is None else int(value)


def _safe_str(value: object) -> str | None:
    return str(value) if value else None


def _first_row(data: Any) -> dict[str, Any] | None:
    if not data:
        return None
    if isinstance(data, list):
        return data[0]
    return data


def _row_to_subscription(row: dict[str, Any]) -> Subscription:
    tier = PlanTier(str(row.get("plan") or PlanTier.TRIAL.value))
    defaults = get_plan(tier)
    return Subscription(
        user_id=str(row["user_id"]),
        plan=tier,
        status=SubscriptionStatus(str(row.get("status") or SubscriptionStatus.ACTIVE.value)),
        limits=PlanLimits(
            minutes_per_month=_safe_float(row.get("minutes_per_month"), defaults.limits.minutes_per_month),
            summaries_per_month=_limit(row.get("summaries_per_month"), defaults.limits.summaries_per_month),
            max_audio_duration=_limit(row.get("max_audio_duration"), defaults.limits.max_audio_duration),
        ),
        features=PlanFeatures(
            multi_language=bool(row.get("multi_language", defaults.features.multi_language)),
            priority=bool(row.get("priority", defaults.features.priority)),
            separate_conversation=bool(
                row.get("separate_conversation", defaults.features.separate_conversation)
            ),
        ),
        trial_start=_parse_datetime(row.get("trial_start")),
        trial_end=_parse_datetime(row.get("trial_end")),
        current_period_start=_parse_datetime(row.get("current_period_start")),
        current_period_end=_parse_datetime(row.get("current_period_end")),
        cancel_at_period_end=bool(row.get("cancel_at_period_end", False)),
    )


def _row_to_profile(row: dict[str, Any]) -> UserProfile:
    return UserProfile(
        user_id=str(row["user_id"]),
        email=_safe_str(row.get("email")),
        transcription_language=str(row.get("transcription_language") or "auto"),
        summary_level=SummaryLevel(str(row.get("summary_level") or SummaryLevel.NONE.value)),
        summary_language=str(row.get("summary_language") or "fr"),
        separate_conversation=bool(row.get("separate_conversation", False)),
        notifications=NotificationPreferences(
            usage_alerts=row.get("notify_usage_alerts") is not False,
            email=row.get("notify_email") is not False,
            whatsapp=row.get("notify_whatsapp") is not False,
        ),
    )


def _row_to_usage(row: dict[str, Any], details: list[dict[str, Any]] | None = None) -> UsageMonth:
    return UsageMonth(
        user_id=str(row["user_id"]),
        month=str(row["month"]),
        transcription_count=_safe_int(row.get("transcription_count")),
        total_minutes=_safe_float(row.get("total_minutes")),
        transcription_cost=_safe_float(row.get("transcription_cost")),
        summary_count=_safe_int(row.get("summary_count")),
        summary_cost=_safe_float(row.get("summary_cost")),
        total_cost=_safe_float(row.get("total_cost")),
        notified_at_80=bool(row.get("notified_at_80", False)),
        notified_at_100=bool(row.get("notified_at_100", False)),
        details=[
            UsageDetail(
                kind=UsageDetailKind(str(detail["kind"])),
                cost=_safe_float(detail.get("cost")),
                transcript_id=_safe_str(detail.get("transcript_id")),
                seconds=float(detail["seconds"]) if detail.get("seconds") is not None else None,
                created_at=_parse_datetime(detail.get("created_at")),
            )
            for detail in details or []
        ],
    )


def _segments_to_json(segments: list[TranscriptionSegment]) -> list[dict[str, Any]]:
    return [
        {
            "start": segment.start,
            "end": segment.end,
            "text": segment.text,
            "confidence": segment.confidence,
        }
        for segment in segments
    ]


def _row_to_transcript(row: dict[str, Any]) -> Transcript:
    return Transcript(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        message_id=str(row["message_id"]),
        status=TranscriptStatus(str(row.get("status") or TranscriptStatus.PENDING.value)),
        text=str(row.get("text") or ""),
        summary=_safe_str(row.get("summary")),
        audio_length=_safe_float(row.get("audio_length")),
        language=_safe_str(row.get("language")),
        confidence=float(row["confidence"]) if row.get("confidence") is not None else None,
        segments=[
            TranscriptionSegment(
                start=_safe_float(seg.get("start")),
                end=_safe_float(seg.get("end")),
                text=str(seg.get("text", "")),
                confidence=seg.get("confidence"),
            )
            for seg in row.get("segments") or []
        ],
        metadata=row.get("metadata") or {},
        error=row.get("error"),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def create_supabase_client() -> Client:
    settings = get_settings()
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)


class SupabaseSubscriptionRepository(SubscriptionRepository):
    TABLE_NAME = "subscriptions"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("get_subscription", str(error)) from error

        row = _first_row(result.data)
        return _row_to_subscription(row) if row else None

    def list_active_user_ids(self) -> list[str]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("user_id")
                .eq("status", SubscriptionStatus.ACTIVE.value)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("list_active_users", str(error)) from error

        return [str(row["user_id"]) for row in result.data or []]


class SupabaseUserProfileRepository(UserProfileRepository):
    TABLE_NAME = "user_profiles"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("get_profile", str(error)) from error

        row = _first_row(result.data)
        return _row_to_profile(row) if row else None


class SupabaseUsageRepository(UsageRepository):
    """
    Ledger backed by the ``usage_months``/``usage_details`` tables.
    Increments run as Postgres functions so concurrent workers never race
    on a read-modify-write.
    """
    TABLE_NAME = "usage_months"
    DETAILS_TABLE = "usage_details"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def get_month(self, user_id: str, month: str) -> UsageMonth:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("user_id", user_id)
                .eq("month", month)
                .limit(1)
                .execute()
            )
            row = _first_row(result.data)
            if not row:
                return UsageMonth(user_id=user_id, month=month)

            details = (
                self._client.table(self.DETAILS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("month", month)
                .order("created_at")
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("get_usage", str(error)) from error

        return _row_to_usage(row, details.data)

    def _increment(self, function: str, params: dict[str, Any], operation: str) -> UsageMonth:
        try:
            result = self._client.rpc(function, params).execute()
        except STORE_ERRORS as error:
            raise RepositoryError(operation, str(error)) from error

        row = _first_row(result.data)
        if not row:
            raise RepositoryError(operation, f"{function} returned no row")
        return _row_to_usage(row)

    def increment_transcription(
        self,
        user_id: str,
        month: str,
        minutes: float,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        usage = self._increment(
            "increment_usage_transcription",
            {
                "p_user_id": user_id,
                "p_month": month,
                "p_minutes": minutes,
                "p_cost": cost,
                "p_transcript_id": transcript_id,
            },
            "increment_transcription",
        )
        logger.debug(
            "Ledger transcription: user=%s, month=%s, minutes=%.2f, total=%.2f",
            user_id, month, minutes, usage.total_minutes,
        )
        return usage

    def increment_summary(
        self,
        user_id: str,
        month: str,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        return self._increment(
            "increment_usage_summary",
            {
                "p_user_id": user_id,
                "p_month": month,
                "p_cost": cost,
                "p_transcript_id": transcript_id,
            },
            "increment_summary",
        )

    def mark_threshold_notified(self, user_id: str, month: str, threshold: int) -> bool:
        try:
            result = self._client.rpc(
                "mark_usage_threshold_notified",
                {"p_user_id": user_id, "p_month": month, "p_threshold": threshold},
            ).execute()
        except STORE_ERRORS as error:
            raise RepositoryError("mark_threshold_notified", str(error)) from error

        return bool(result.data)


class SupabaseTranscriptRepository(TranscriptRepository):
    TABLE_NAME = "transcripts"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()

    def get_by_message_id(self, message_id: str) -> Optional[Transcript]:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("message_id", message_id)
                .limit(1)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("get_transcript", str(error)) from error

        row = _first_row(result.data)
        return _row_to_transcript(row) if row else None

    def create_pending(self, transcript: Transcript) -> Transcript:
        data = {
            "id": transcript.id or str(uuid4()),
            "user_id": transcript.user_id,
            "message_id": transcript.message_id,
            "status": TranscriptStatus.PROCESSING.value,
            "text": "",
            "metadata": transcript.metadata,
            "created_at": utcnow().isoformat(),
            "updated_at": utcnow().isoformat(),
        }

        try:
            result = self._client.table(self.TABLE_NAME).insert(data).execute()
        except APIError as error:
            if error.code == UNIQUE_VIOLATION:
                raise DuplicateTranscriptError(transcript.message_id) from error
            raise RepositoryError("create_transcript", str(error)) from error
        except (ConnectionError, TimeoutError, httpx.HTTPError) as error:
            raise RepositoryError("create_transcript", str(error)) from error

        row = _first_row(result.data)
        if not row:
            raise RepositoryError("create_transcript", "insert returned no row")
        return _row_to_transcript(row)

    def _update(self, transcript_id: str, update: dict[str, Any], operation: str) -> Transcript:
        update["updated_at"] = utcnow().isoformat()
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update(update)
                .eq("id", transcript_id)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError(operation, str(error)) from error

        row = _first_row(result.data)
        if not row:
            raise RepositoryError(operation, f"transcript {transcript_id} not found")
        return _row_to_transcript(row)

    def reopen(self, transcript: Transcript) -> Transcript:
        """Claim a failed transcript for another attempt; only one caller wins the claim."""
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update({
                    "status": TranscriptStatus.PROCESSING.value,
                    "error": None,
                    "updated_at": utcnow().isoformat(),
                })
                .eq("id", transcript.id)
                .eq("status", TranscriptStatus.FAILED.value)
                .execute()
            )
        except STORE_ERRORS as error:
            raise RepositoryError("reopen_transcript", str(error)) from error

        row = _first_row(result.data)
        if not row:
            raise DuplicateTranscriptError(transcript.message_id)
        return _row_to_transcript(row)

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
        return self._update(
            transcript_id,
            {
                "status": TranscriptStatus.COMPLETED.value,
                "text": text,
                "summary": summary,
                "audio_length": audio_length,
                "language": language,
                "confidence": confidence,
                "segments": _segments_to_json(segments),
                "metadata": metadata,
                "error": None,
            },
            "complete_transcript",
        )

    def mark_failed(self, transcript_id: str, error_message: str, code: str) -> None:
        self._update(
            transcript_id,
            {
                "status": TranscriptStatus.FAILED.value,
                "error": {
                    "message": error_message[:1000],
                    "code": code,
                    "timestamp": utcnow().isoformat(),
                },
            },
            "fail_transcript",
        )
