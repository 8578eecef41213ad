# voxnote/app/services/notifications.py
"""
Quota threshold notifications (80% warning, 100% exhausted).

Each threshold is claimed in the ledger before anything is sent, so a
periodic scan and a post-transcription check never notify twice in the
same month.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from starlette.concurrency import run_in_threadpool

from voxnote.app.domain.models import Subscription, UserProfile
from voxnote.app.infra.db.base import SubscriptionRepository
from voxnote.app.services import replies
from voxnote.app.services.profile_service import ProfileService
from voxnote.app.services.quota_service import (
    EXHAUSTED_THRESHOLD_PERCENT,
    WARNING_THRESHOLD_PERCENT,
    QuotaLedger,
)

logger = logging.getLogger(__name__)

KIND_WARNING = "quota_warning"
KIND_EXHAUSTED = "quota_exhausted"


@dataclass
class QuotaAlert:
    kind: str
    user_id: str
    language: str
    used_percent: int
    used_minutes: float
    total_minutes: float
    remaining_minutes: float
    upgrade_url: str
    renewal_date: Optional[datetime] = None

    def renewal_label(self) -> str:
        if self.renewal_date is None:
            return "-"
        if self.language == "en":
            return self.renewal_date.strftime("%m/%d/%Y")
        return self.renewal_date.strftime("%d/%m/%Y")

    def as_message(self) -> str:
        key = "quota_warning" if self.kind == KIND_WARNING else "quota_exhausted_notice"
        return replies.text(
            key,
            self.language,
            used_percent=self.used_percent,
            remaining=replies.format_minutes(self.remaining_minutes),
            total=replies.format_minutes(self.total_minutes),
            upgrade_url=self.upgrade_url,
            renewal_date=self.renewal_label(),
        )


class EmailSender(Protocol):
    async def send_quota_alert(self, email: str, alert: QuotaAlert) -> None: ...


class SelfMessageSender(Protocol):
    async def send_to_self(self, user_id: str, text: str) -> bool: ...


class LoggingEmailSender:
    """Stand-in transport; mail formatting and delivery live in another service."""

    async def send_quota_alert(self, email: str, alert: QuotaAlert) -> None:
        logger.info(
            "notify.email kind=%s user=%s to=%s used_percent=%d",
            alert.kind,
            alert.user_id,
            email,
            alert.used_percent,
        )


class QuotaNotifier:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        profiles: ProfileService,
        ledger: QuotaLedger,
        email_sender: Optional[EmailSender] = None,
        message_sender: Optional[SelfMessageSender] = None,
        dashboard_url: str = "",
    ):
        self._subscriptions = subscriptions
        self._profiles = profiles
        self._ledger = ledger
        self._email = email_sender or LoggingEmailSender()
        self._messages = message_sender
        self._upgrade_url = f"{dashboard_url}?section=subscription" if dashboard_url else ""

    async def check_and_notify(self, user_id: str) -> Optional[str]:
        """
        Send the notification due for the user's current usage, if any.

        Returns:
            The kind of notification sent, or None
        """
        subscription = await run_in_threadpool(self._subscriptions.get_by_user, user_id)
        profile = await self._profiles.get_profile(user_id)
        if subscription is None or profile is None:
            return None
        if not profile.notifications.usage_alerts:
            return None

        snapshot = await run_in_threadpool(self._ledger.snapshot, subscription)
        used_percent = snapshot.used_percent

        if used_percent >= EXHAUSTED_THRESHOLD_PERCENT:
            threshold, kind = EXHAUSTED_THRESHOLD_PERCENT, KIND_EXHAUSTED
        elif used_percent >= WARNING_THRESHOLD_PERCENT:
            threshold, kind = WARNING_THRESHOLD_PERCENT, KIND_WARNING
        else:
            return None

        claimed = await run_in_threadpool(self._ledger.mark_threshold_notified, user_id, threshold)
        if not claimed:
            return None

        alert = QuotaAlert(
            kind=kind,
            user_id=user_id,
            language=profile.summary_language,
            used_percent=used_percent,
            used_minutes=snapshot.minutes_used,
            total_minutes=snapshot.minutes_limit,
            remaining_minutes=snapshot.minutes_remaining,
            upgrade_url=self._upgrade_url,
            renewal_date=_renewal_date(subscription),
        )
        await self._deliver(profile, alert)
        logger.info("notify.sent kind=%s user=%s used_percent=%d", kind, user_id, used_percent)
        return kind

    async def _deliver(self, profile: UserProfile, alert: QuotaAlert) -> None:
        prefs = profile.notifications

        if prefs.email and profile.email:
            try:
                await self._email.send_quota_alert(profile.email, alert)
            except Exception as error:
                logger.warning("notify.email_failed user=%s error=%s", alert.user_id, error)

        if prefs.whatsapp and self._messages is not None:
            try:
                sent = await self._messages.send_to_self(alert.user_id, alert.as_message())
                if not sent:
                    logger.info("notify.whatsapp_skipped user=%s reason=not_connected", alert.user_id)
            except Exception as error:
                logger.warning("notify.whatsapp_failed user=%s error=%s", alert.user_id, error)


def _renewal_date(subscription: Subscription) -> Optional[datetime]:
    if subscription.is_trial:
        return subscription.trial_end
    return subscription.current_period_end
