# voxnote/app/services/voice_pipeline.py
"""
Voice note processing.

One run turns one inbound voice note into a completed transcript, a ledger
commit and exactly one reply. Every gate runs before any paid call; temp
audio is removed on every exit path.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from voxnote.app.domain.errors import (
    AudioTooLongError,
    CollaboratorError,
    DuplicateTranscriptError,
    EntitlementError,
    LedgerCommitError,
    MediaDownloadError,
    QuotaExceededError,
    SubscriptionInactiveError,
    TranscriptionTimeoutError,
)
from voxnote.app.domain.models import (
    MediaPayload,
    Subscription,
    SummaryLevel,
    Transcript,
    TranscriptionResult,
    TranscriptStatus,
    UserProfile,
    utcnow,
)
from voxnote.app.domain.plans import transcription_cost
from voxnote.app.infra.db.base import SubscriptionRepository, TranscriptRepository
from voxnote.app.infra.messaging.base import InboundMessage
from voxnote.app.services import replies
from voxnote.app.services.media import MediaTools
from voxnote.app.services.notifications import QuotaNotifier
from voxnote.app.services.profile_service import ProfileService
from voxnote.app.services.promo import PromoPicker
from voxnote.app.services.quota_service import QuotaLedger, seconds_to_minutes
from voxnote.app.services.summary_service import SummaryService

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_REJECTED = "rejected"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"


class Transcriber(Protocol):
    def transcribe(self, audio_path: Path, language: Optional[str] = None) -> TranscriptionResult: ...


class Messenger(Protocol):
    async def send_message(self, user_id: str, target_id: str, text: str) -> None: ...


@dataclass
class PipelineTimeouts:
    download: float = 60
    transcription: float = 300


@dataclass
class _Run:
    """Mutable state of one run, for cleanup and failure bookkeeping."""
    user_id: str
    message: InboundMessage
    language: str
    started: float
    source_path: Optional[Path] = None
    converted_path: Optional[Path] = None
    transcript: Optional[Transcript] = None


class VoiceNotePipeline:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        profiles: ProfileService,
        transcripts: TranscriptRepository,
        ledger: QuotaLedger,
        media: MediaTools,
        transcriber: Transcriber,
        summaries: SummaryService,
        messenger: Messenger,
        promos: Optional[PromoPicker] = None,
        notifier: Optional[QuotaNotifier] = None,
        timeouts: Optional[PipelineTimeouts] = None,
        default_language: str = "fr",
        dashboard_url: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._subscriptions = subscriptions
        self._profiles = profiles
        self._transcripts = transcripts
        self._ledger = ledger
        self._media = media
        self._transcriber = transcriber
        self._summaries = summaries
        self._messenger = messenger
        self._promos = promos or PromoPicker()
        self._notifier = notifier
        self._timeouts = timeouts or PipelineTimeouts()
        self._default_language = default_language
        self._dashboard_url = dashboard_url
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    async def process(self, user_id: str, message: InboundMessage, final_attempt: bool = True) -> str:
        """
        Run every stage for one voice note.

        Args:
            user_id: Owner of the session the note arrived on
            message: The inbound voice note
            final_attempt: False when the work queue may retry this run

        Returns:
            One of the OUTCOME_* values

        Raises:
            CollaboratorError: Retryable failure on a non-final attempt;
                no reply has been sent
        """
        run = _Run(
            user_id=user_id,
            message=message,
            language=self._default_language,
            started=time.monotonic(),
        )
        try:
            return await self._run(run)

        except EntitlementError as error:
            logger.info("pipeline.rejected user=%s message=%s reason=%s", user_id, message.id, error)
            await self._reply(run, message.from_id, self._entitlement_reply(error, run.language))
            return OUTCOME_REJECTED

        except Exception as error:
            retryable = isinstance(error, CollaboratorError) and error.retryable
            if isinstance(error, CollaboratorError):
                logger.warning(
                    "pipeline.collaborator_failed user=%s message=%s retryable=%s final=%s error=%s",
                    user_id, message.id, retryable, final_attempt, error,
                )
            else:
                logger.exception("pipeline.unexpected_error user=%s message=%s", user_id, message.id)

            await self._mark_failed(run, error)
            if retryable and not final_attempt:
                raise

            key = "download_failed" if isinstance(error, MediaDownloadError) else "processing_error"
            await self._reply(run, message.from_id, replies.text(key, run.language))
            return OUTCOME_FAILED

        finally:
            await run_in_threadpool(self._media.cleanup, run.source_path, run.converted_path)

    async def _run(self, run: _Run) -> str:
        user_id, message = run.user_id, run.message

        existing = await run_in_threadpool(self._transcripts.get_by_message_id, message.id)
        if existing is not None and existing.blocks_reprocessing:
            logger.info(
                "pipeline.duplicate user=%s message=%s status=%s", user_id, message.id, existing.status.value
            )
            return OUTCOME_DUPLICATE

        # 1. entitlement
        subscription, profile = await self._load_user(user_id)
        run.language = profile.summary_language or self._default_language
        if subscription is None or not subscription.is_active(self._clock()):
            raise SubscriptionInactiveError(user_id)

        # 2. any balance left
        await run_in_threadpool(self._ledger.ensure_minutes_available, subscription)

        # 3. media
        payload = await self._fetch_media(message)
        run.source_path = await run_in_threadpool(self._media.write_temp, payload)

        # 4. measured duration
        duration = await run_in_threadpool(self._media.probe_duration, run.source_path)

        # 5. per-message ceiling, independent of balance
        max_duration = subscription.limits.max_audio_duration
        if duration > max_duration:
            raise AudioTooLongError(duration, max_duration)

        # 6. precise balance, re-read from the ledger
        await run_in_threadpool(self._ledger.ensure_minutes_for, subscription, duration)

        try:
            run.transcript = await self._open_transcript(existing, user_id, message, payload)
        except DuplicateTranscriptError:
            logger.info("pipeline.duplicate user=%s message=%s status=concurrent", user_id, message.id)
            return OUTCOME_DUPLICATE

        # 7. canonical format
        run.converted_path = await run_in_threadpool(self._media.convert_to_wav, run.source_path)

        # 8. speech to text
        result = await self._transcribe(run.converted_path, profile, subscription)

        # 9. optional summary
        summary = await self._maybe_summarize(result.text, profile, subscription)

        # 10. completed transcript
        run.transcript = await self._persist(run, payload, duration, result, summary)

        # 11. ledger commit
        remaining = await self._commit(run, subscription, profile, duration, summary)

        # 12. single reply
        reply = self._compose_reply(run, subscription, result, summary, remaining, duration)
        target = self._reply_target(message, profile, subscription)
        await self._reply(run, target, reply)

        logger.info(
            "pipeline.completed user=%s message=%s duration=%.1fs language=%s summary=%s",
            user_id, message.id, duration, result.language, summary is not None,
        )
        self._schedule_notification(user_id)
        return OUTCOME_COMPLETED

    # =========================================================================
    # Stages
    # =========================================================================

    async def _load_user(self, user_id: str) -> tuple[Optional[Subscription], UserProfile]:
        subscription = await run_in_threadpool(self._subscriptions.get_by_user, user_id)
        profile = await self._profiles.get_profile(user_id)
        return subscription, profile or UserProfile(user_id=user_id)

    async def _fetch_media(self, message: InboundMessage) -> MediaPayload:
        try:
            payload = await asyncio.wait_for(message.download_media(), timeout=self._timeouts.download)
        except asyncio.TimeoutError as error:
            raise MediaDownloadError(message.id, f"timed out after {self._timeouts.download}s") from error
        except (OSError, ConnectionError) as error:
            raise MediaDownloadError(message.id, str(error)) from error

        if payload is None or not payload.data:
            raise MediaDownloadError(message.id, "media unavailable")
        return payload

    async def _open_transcript(
        self,
        existing: Optional[Transcript],
        user_id: str,
        message: InboundMessage,
        payload: MediaPayload,
    ) -> Transcript:
        if existing is not None:
            logger.info("pipeline.retry_failed_transcript user=%s transcript=%s", user_id, existing.id)
            return await run_in_threadpool(self._transcripts.reopen, existing)

        pending = Transcript(
            id=str(uuid4()),
            user_id=user_id,
            message_id=message.id,
            status=TranscriptStatus.PROCESSING,
            metadata={
                "from_number": message.from_id,
                "conversation_id": message.from_id,
                "timestamp": datetime.fromtimestamp(message.timestamp, tz=timezone.utc).isoformat(),
                "mimetype": payload.mimetype,
                "original_size": payload.size,
            },
        )
        return await run_in_threadpool(self._transcripts.create_pending, pending)

    def _language_hint(self, profile: UserProfile, subscription: Subscription) -> Optional[str]:
        if subscription.features.multi_language:
            return profile.language_hint
        return profile.language_hint or self._default_language

    async def _transcribe(
        self,
        audio_path: Path,
        profile: UserProfile,
        subscription: Subscription,
    ) -> TranscriptionResult:
        language = self._language_hint(profile, subscription)
        # to_thread so a timed-out call is abandoned instead of awaited
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._transcriber.transcribe, audio_path, language),
                timeout=self._timeouts.transcription,
            )
        except asyncio.TimeoutError as error:
            raise TranscriptionTimeoutError(self._timeouts.transcription) from error

    async def _maybe_summarize(
        self,
        text: str,
        profile: UserProfile,
        subscription: Subscription,
    ) -> Optional[str]:
        if profile.summary_level == SummaryLevel.NONE or subscription.is_trial:
            return None
        if not self._summaries.available or not text:
            return None

        remaining = await run_in_threadpool(self._ledger.remaining_summaries, subscription)
        if remaining <= 0:
            logger.info("pipeline.summary_skipped user=%s reason=no_summaries_left", subscription.user_id)
            return None

        return await self._summaries.summarize(text, profile.summary_level, profile.summary_language)

    async def _persist(
        self,
        run: _Run,
        payload: MediaPayload,
        duration: float,
        result: TranscriptionResult,
        summary: Optional[str],
    ) -> Transcript:
        transcript = run.transcript
        metadata = dict(transcript.metadata)
        metadata.update({
            "cost": transcription_cost(seconds_to_minutes(duration)),
            "model_version": result.model_version,
            "processing_time_ms": int((time.monotonic() - run.started) * 1000),
        })
        metadata.setdefault("mimetype", payload.mimetype)
        metadata.setdefault("original_size", payload.size)

        return await run_in_threadpool(
            self._transcripts.mark_completed,
            transcript.id,
            result.text,
            summary,
            duration,
            result.language,
            result.confidence,
            result.segments,
            metadata,
        )

    async def _commit(
        self,
        run: _Run,
        subscription: Subscription,
        profile: UserProfile,
        duration: float,
        summary: Optional[str],
    ) -> float:
        """Record consumption; returns the remaining minutes to show the user."""
        minutes = seconds_to_minutes(duration)
        transcript_id = run.transcript.id

        snapshot = await run_in_threadpool(self._ledger.snapshot, subscription)
        if minutes > snapshot.minutes_remaining:
            logger.warning(
                "quota.race_overrun user=%s transcript=%s minutes=%.2f remaining=%.2f",
                run.user_id, transcript_id, minutes, snapshot.minutes_remaining,
            )

        remaining = max(0.0, snapshot.minutes_remaining - minutes)
        try:
            usage = await run_in_threadpool(
                self._ledger.record_transcription, run.user_id, duration, transcript_id
            )
            remaining = max(0.0, subscription.limits.minutes_per_month - usage.total_minutes)
        except LedgerCommitError as error:
            logger.error(
                "quota.reconciliation_required user=%s transcript=%s kind=transcription minutes=%.4f error=%s",
                run.user_id, transcript_id, minutes, error,
            )

        if summary is not None:
            try:
                await run_in_threadpool(
                    self._ledger.record_summary, run.user_id, profile.summary_level, transcript_id
                )
            except LedgerCommitError as error:
                logger.error(
                    "quota.reconciliation_required user=%s transcript=%s kind=summary error=%s",
                    run.user_id, transcript_id, error,
                )

        return remaining

    def _compose_reply(
        self,
        run: _Run,
        subscription: Subscription,
        result: TranscriptionResult,
        summary: Optional[str],
        remaining: float,
        duration: float,
    ) -> str:
        lang = run.language
        body = result.text or replies.text("empty_transcription", lang)
        parts = [f"{replies.text('transcription_header', lang)}\n\n{body}"]
        if summary:
            parts.append(f"{replies.text('summary_header', lang)}\n{summary}")
        parts.append(replies.text("remaining", lang, remaining=replies.format_minutes(remaining)))

        if subscription.is_trial:
            limit = subscription.limits.minutes_per_month
            used_percent = round((limit - remaining) / limit * 100) if limit > 0 else 100
            parts.append(self._promos.footer(
                run.user_id,
                lang,
                used_percent=used_percent,
                duration_seconds=duration,
            ))
        return "\n\n".join(parts)

    def _reply_target(self, message: InboundMessage, profile: UserProfile, subscription: Subscription) -> str:
        if profile.separate_conversation and subscription.can_use_feature("separate_conversation", self._clock()):
            return message.to_id
        return message.from_id

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _entitlement_reply(self, error: EntitlementError, language: str) -> str:
        if isinstance(error, SubscriptionInactiveError):
            return replies.text("subscription_inactive", language, dashboard_url=self._dashboard_url)
        if isinstance(error, AudioTooLongError):
            return replies.text(
                "too_long", language, max_minutes=replies.format_minutes(error.max_seconds / 60, 1)
            )
        if isinstance(error, QuotaExceededError) and error.minutes_remaining > 0:
            return replies.text(
                "not_enough_quota", language, remaining=replies.format_minutes(error.minutes_remaining, 1)
            )
        return replies.text("quota_exhausted", language)

    async def _reply(self, run: _Run, target_id: str, text: str) -> None:
        try:
            await self._messenger.send_message(run.user_id, target_id, text)
        except Exception as error:
            logger.error(
                "pipeline.reply_failed user=%s message=%s target=%s error=%s",
                run.user_id, run.message.id, target_id, error,
            )

    async def _mark_failed(self, run: _Run, error: Exception) -> None:
        transcript = run.transcript
        if transcript is None or transcript.status == TranscriptStatus.COMPLETED:
            return
        try:
            await run_in_threadpool(
                self._transcripts.mark_failed, transcript.id, str(error), type(error).__name__
            )
        except Exception as store_error:
            logger.error(
                "pipeline.mark_failed_failed transcript=%s error=%s", transcript.id, store_error
            )

    def _schedule_notification(self, user_id: str) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._notify(user_id), name=f"quota-notify-{user_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify(self, user_id: str) -> None:
        try:
            await self._notifier.check_and_notify(user_id)
        except Exception as error:
            logger.warning("notify.check_failed user=%s error=%s", user_id, error)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
