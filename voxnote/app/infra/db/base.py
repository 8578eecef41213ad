# voxnote/app/infra/db/base.py
"""
Abstract repositories for subscriptions, profiles, the usage ledger and transcripts.
Implementations are synchronous; async callers go through a thread pool.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from voxnote.app.domain.models import (
    Subscription,
    Transcript,
    TranscriptionSegment,
    UsageMonth,
    UserProfile,
)


class SubscriptionRepository(ABC):
    """
    Read access to subscriptions.
    Writes belong to the billing collaborator.
    """

    @abstractmethod
    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def list_active_user_ids(self) -> list[str]:
        """Users whose subscription status is active, for periodic scans."""
        pass


class UserProfileRepository(ABC):
    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        pass


class UsageRepository(ABC):
    """
    Durable ledger keyed by (user, month).

    Increments must be atomic in the store itself; callers never
    read-modify-write a row.
    """

    @abstractmethod
    def get_month(self, user_id: str, month: str) -> UsageMonth:
        """
        Get the ledger row for a month.

        Returns an empty row when the user has no consumption that month.
        """
        pass

    @abstractmethod
    def increment_transcription(
        self,
        user_id: str,
        month: str,
        minutes: float,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        """
        Add one transcription to the row and append its detail record.

        Args:
            user_id: The user
            month: YYYY-MM
            minutes: Audio minutes consumed
            cost: Cost estimate for the transcription
            transcript_id: Transcript the consumption belongs to

        Returns:
            The row after the increment
        """
        pass

    @abstractmethod
    def increment_summary(
        self,
        user_id: str,
        month: str,
        cost: float,
        transcript_id: str,
    ) -> UsageMonth:
        pass

    @abstractmethod
    def mark_threshold_notified(self, user_id: str, month: str, threshold: int) -> bool:
        """
        Claim the notification for a threshold (80 or 100).

        Returns:
            True only for the caller that flipped the flag
        """
        pass


class TranscriptRepository(ABC):
    @abstractmethod
    def get_by_message_id(self, message_id: str) -> Optional[Transcript]:
        pass

    @abstractmethod
    def create_pending(self, transcript: Transcript) -> Transcript:
        """
        Insert a transcript guarded by its unique inbound-message id.

        Raises:
            DuplicateTranscriptError: If the message id is already taken
        """
        pass

    @abstractmethod
    def reopen(self, transcript: Transcript) -> Transcript:
        """
        Move a failed transcript back to processing for another attempt.

        Raises:
            DuplicateTranscriptError: If the transcript is no longer failed
        """
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    def mark_failed(self, transcript_id: str, error_message: str, code: str) -> None:
        pass
