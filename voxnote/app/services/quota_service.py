# voxnote/app/services/quota_service.py
"""
Quota ledger service.
Answers "how much may this user still consume this month" and records
consumption against the authoritative usage store.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from voxnote.app.domain.errors import LedgerCommitError, QuotaExceededError, RepositoryError
from voxnote.app.domain.models import (
    QuotaSnapshot,
    Subscription,
    SummaryLevel,
    UsageMonth,
    current_month,
    utcnow,
)
from voxnote.app.domain.plans import summary_cost, transcription_cost
from voxnote.app.infra.db.base import UsageRepository

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_PERCENT = 80
EXHAUSTED_THRESHOLD_PERCENT = 100


def seconds_to_minutes(seconds: float) -> float:
    return seconds / 60.0


class QuotaLedger:
    """
    Service for managing monthly quotas.

    Responsibilities:
    - Derive remaining minutes and summaries from this month's ledger row
    - Gate pipeline stages on remaining balance
    - Record consumption through atomic store increments
    - Claim threshold notifications once per month

    Reads always hit the repository; nothing here is cached.
    """

    def __init__(
        self,
        repository: UsageRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._clock = clock

    def current_month(self) -> str:
        return current_month(self._clock())

    def get_usage(self, user_id: str, month: Optional[str] = None) -> UsageMonth:
        return self._repo.get_month(user_id, month or self.current_month())

    def snapshot(self, subscription: Subscription, month: Optional[str] = None) -> QuotaSnapshot:
        """
        Get the current balance for a subscription.

        Args:
            subscription: The user's subscription, for its limits
            month: Ledger month, defaults to the current one

        Returns:
            QuotaSnapshot computed from the ledger row
        """
        usage = self.get_usage(subscription.user_id, month)
        return QuotaSnapshot(
            minutes_limit=subscription.limits.minutes_per_month,
            minutes_used=usage.total_minutes,
            summaries_limit=subscription.limits.summaries_per_month,
            summaries_used=usage.summary_count,
        )

    def remaining_minutes(self, subscription: Subscription) -> float:
        return self.snapshot(subscription).minutes_remaining

    def remaining_summaries(self, subscription: Subscription) -> int:
        return self.snapshot(subscription).summaries_remaining

    def ensure_minutes_available(self, subscription: Subscription) -> QuotaSnapshot:
        """
        Pre-flight check: any balance left at all.

        Raises:
            QuotaExceededError: If remaining minutes are zero
        """
        snapshot = self.snapshot(subscription)
        if snapshot.minutes_remaining <= 0:
            raise QuotaExceededError(
                message="Monthly quota exhausted",
                minutes_remaining=0.0,
            )
        return snapshot

    def ensure_minutes_for(self, subscription: Subscription, seconds: float) -> QuotaSnapshot:
        """
        Precise check against the measured duration of one message.

        Raises:
            QuotaExceededError: If the message needs more than what is left
        """
        snapshot = self.snapshot(subscription)
        needed = seconds_to_minutes(seconds)
        if needed > snapshot.minutes_remaining:
            raise QuotaExceededError(
                message=f"Message needs {needed:.2f} minutes",
                minutes_remaining=snapshot.minutes_remaining,
            )
        return snapshot

    def record_transcription(
        self,
        user_id: str,
        seconds: float,
        transcript_id: str,
    ) -> UsageMonth:
        """
        Commit one transcription to the ledger.

        Args:
            user_id: The user
            seconds: Measured audio duration
            transcript_id: Transcript the consumption belongs to

        Returns:
            The ledger row after the increment

        Raises:
            LedgerCommitError: If the store rejected the increment
        """
        minutes = seconds_to_minutes(seconds)
        cost = transcription_cost(minutes)
        month = self.current_month()

        try:
            usage = self._repo.increment_transcription(
                user_id=user_id,
                month=month,
                minutes=minutes,
                cost=cost,
                transcript_id=transcript_id,
            )
        except RepositoryError as error:
            raise LedgerCommitError(user_id, error.reason) from error

        logger.info(
            "Quota recorded: user=%s, month=%s, minutes=%.2f, total=%.2f",
            user_id,
            month,
            minutes,
            usage.total_minutes,
        )
        return usage

    def record_summary(
        self,
        user_id: str,
        level: SummaryLevel,
        transcript_id: str,
    ) -> UsageMonth:
        month = self.current_month()
        try:
            return self._repo.increment_summary(
                user_id=user_id,
                month=month,
                cost=summary_cost(level.value),
                transcript_id=transcript_id,
            )
        except RepositoryError as error:
            raise LedgerCommitError(user_id, error.reason) from error

    def mark_threshold_notified(self, user_id: str, threshold: int, month: Optional[str] = None) -> bool:
        """
        Claim the notification for a threshold this month.

        Returns:
            True if this caller should send the notification
        """
        if threshold not in (WARNING_THRESHOLD_PERCENT, EXHAUSTED_THRESHOLD_PERCENT):
            raise ValueError(f"Unsupported threshold: {threshold}")
        return self._repo.mark_threshold_notified(user_id, month or self.current_month(), threshold)
