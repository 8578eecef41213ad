from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import (
    FIXED_MONTH,
    EmailSenderStub,
    InMemoryUsageRepository,
    SelfMessageSenderStub,
    SubscriptionRepositoryStub,
    UserProfileRepositoryStub,
    build_profile,
    build_subscription,
    fixed_clock,
)
from voxnote.app.domain.models import NotificationPreferences
from voxnote.app.domain.plans import PlanTier
from voxnote.app.services.notifications import (
    KIND_EXHAUSTED,
    KIND_WARNING,
    QuotaAlert,
    QuotaNotifier,
)
from voxnote.app.services.profile_service import ProfileService
from voxnote.app.services.quota_service import QuotaLedger

USER = "user-1"


class NotifierHarness:
    def __init__(self) -> None:
        self.subscriptions = SubscriptionRepositoryStub()
        self.profiles = UserProfileRepositoryStub()
        self.usage = InMemoryUsageRepository()
        self.email = EmailSenderStub()
        self.self_sender = SelfMessageSenderStub()

    def build(self) -> QuotaNotifier:
        return QuotaNotifier(
            subscriptions=self.subscriptions,
            profiles=ProfileService(self.profiles),
            ledger=QuotaLedger(self.usage, clock=fixed_clock),
            email_sender=self.email,
            message_sender=self.self_sender,
            dashboard_url="https://voxnote.test/dashboard",
        )

    def setup_user(self, minutes_used: float, tier: PlanTier = PlanTier.BASIC, **profile_overrides) -> None:
        self.subscriptions.add(build_subscription(USER, tier))
        self.profiles.add(build_profile(USER, **profile_overrides))
        self.usage.preload(USER, FIXED_MONTH, minutes=minutes_used)


@pytest.fixture
def notifier_harness() -> NotifierHarness:
    return NotifierHarness()


class TestQuotaNotifier:
    @pytest.mark.asyncio
    async def test_warning_at_eighty_percent(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=240)

        kind = await notifier_harness.build().check_and_notify(USER)

        assert kind == KIND_WARNING
        email, alert = notifier_harness.email.sent[0]
        assert email == "user-1@example.com"
        assert alert.used_percent == 80
        assert alert.remaining_minutes == 60
        assert alert.upgrade_url == "https://voxnote.test/dashboard?section=subscription"
        user_id, text = notifier_harness.self_sender.sent[0]
        assert user_id == USER
        assert "80%" in text

    @pytest.mark.asyncio
    async def test_exhausted_at_hundred_percent(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=300)

        kind = await notifier_harness.build().check_and_notify(USER)

        assert kind == KIND_EXHAUSTED
        assert notifier_harness.email.sent[0][1].kind == KIND_EXHAUSTED

    @pytest.mark.asyncio
    async def test_each_threshold_sent_once_per_month(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=250)
        notifier = notifier_harness.build()

        assert await notifier.check_and_notify(USER) == KIND_WARNING
        assert await notifier.check_and_notify(USER) is None

        notifier_harness.usage.preload(USER, FIXED_MONTH, minutes=300)
        notifier_harness.usage.rows[(USER, FIXED_MONTH)].notified_at_80 = True
        assert await notifier.check_and_notify(USER) == KIND_EXHAUSTED
        assert len(notifier_harness.email.sent) == 2

    @pytest.mark.asyncio
    async def test_below_warning_sends_nothing(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=200)

        assert await notifier_harness.build().check_and_notify(USER) is None
        assert notifier_harness.email.sent == []

    @pytest.mark.asyncio
    async def test_usage_alerts_disabled(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(
            minutes_used=290,
            notifications=NotificationPreferences(usage_alerts=False),
        )

        assert await notifier_harness.build().check_and_notify(USER) is None
        assert notifier_harness.email.sent == []
        assert notifier_harness.usage.rows[(USER, FIXED_MONTH)].notified_at_80 is False

    @pytest.mark.asyncio
    async def test_channel_preferences_are_respected(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(
            minutes_used=250,
            notifications=NotificationPreferences(email=False),
        )

        assert await notifier_harness.build().check_and_notify(USER) == KIND_WARNING
        assert notifier_harness.email.sent == []
        assert len(notifier_harness.self_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_email_failure_does_not_block_whatsapp(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=250)
        notifier_harness.email.fail = True

        assert await notifier_harness.build().check_and_notify(USER) == KIND_WARNING
        assert len(notifier_harness.self_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_disconnected_whatsapp_still_counts_as_sent(self, notifier_harness: NotifierHarness) -> None:
        notifier_harness.setup_user(minutes_used=250)
        notifier_harness.self_sender.connected = False

        assert await notifier_harness.build().check_and_notify(USER) == KIND_WARNING
        assert len(notifier_harness.email.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_user(self, notifier_harness: NotifierHarness) -> None:
        assert await notifier_harness.build().check_and_notify("ghost") is None


class TestQuotaAlert:
    def _alert(self, language: str, kind: str = KIND_WARNING) -> QuotaAlert:
        return QuotaAlert(
            kind=kind,
            user_id=USER,
            language=language,
            used_percent=85,
            used_minutes=8.5,
            total_minutes=10,
            remaining_minutes=1.5,
            upgrade_url="https://voxnote.test/dashboard?section=subscription",
            renewal_date=datetime(2026, 3, 21, tzinfo=timezone.utc),
        )

    def test_renewal_label_by_language(self) -> None:
        assert self._alert("fr").renewal_label() == "21/03/2026"
        assert self._alert("en").renewal_label() == "03/21/2026"

    def test_renewal_label_without_date(self) -> None:
        alert = self._alert("fr")
        alert.renewal_date = None
        assert alert.renewal_label() == "-"

    def test_warning_message(self) -> None:
        message = self._alert("fr").as_message()

        assert "85%" in message
        assert "Il vous reste 2 minutes sur 10" in message

    def test_exhausted_message(self) -> None:
        message = self._alert("en", KIND_EXHAUSTED).as_message()

        assert "Renewal on 03/21/2026" in message
        assert "?section=subscription" in message
