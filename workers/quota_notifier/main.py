from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from starlette.concurrency import run_in_threadpool

from voxnote.app.domain.errors import ConfigurationError, RepositoryError
from voxnote.app.infra.cache.two_tier import TwoTierCache
from voxnote.app.infra.db.base import SubscriptionRepository
from voxnote.app.services.notifications import QuotaNotifier
from workers.quota_notifier.config import NotifierConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("quota-notifier-worker")

SLEEP_STEP_SECONDS = 1.0


class QuotaNotifierWorker:
    def __init__(
        self,
        config: NotifierConfig,
        subscription_repository: SubscriptionRepository,
        notifier: QuotaNotifier,
        cache: Optional[TwoTierCache] = None,
    ):
        self.config = config
        self.subscriptions = subscription_repository
        self.notifier = notifier
        self.cache = cache
        self.running = False
        self.scans_completed = 0
        self.notifications_sent = 0

    def start(self) -> None:
        self._validate_configuration()
        self._setup_signal_handlers()
        self._log_startup_info()
        self.running = True
        asyncio.run(self._run_main_loop())
        self._shutdown()

    def _validate_configuration(self) -> None:
        errors = self.config.validate()
        if errors:
            raise ConfigurationError(errors)

    def _setup_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        signal.signal(signal.SIGINT, self._handle_shutdown_signal)

    def _log_startup_info(self) -> None:
        logger.info(
            "Starting quota notifier: id=%s, interval=%ds, run_once=%s",
            self.config.worker_id,
            self.config.scan_interval_seconds,
            self.config.run_once,
        )

    async def _run_main_loop(self) -> None:
        try:
            while self.running:
                await self.run_scan()
                if self.config.run_once:
                    break
                await self._sleep_until_next_scan()
        finally:
            if self.cache is not None:
                await self.cache.close()

    async def run_scan(self) -> int:
        """
        Check every active user once.

        Returns:
            Number of notifications sent during this scan
        """
        started = time.monotonic()
        try:
            user_ids = await run_in_threadpool(self.subscriptions.list_active_user_ids)
        except RepositoryError as error:
            logger.error("Scan aborted, could not list users: %s", error)
            return 0

        sent = 0
        for user_id in user_ids:
            if not self.running:
                break
            try:
                kind = await self.notifier.check_and_notify(user_id)
            except Exception as error:
                logger.warning("Quota check failed: user=%s, error=%s", user_id, error)
                continue
            if kind is not None:
                sent += 1

        self.scans_completed += 1
        self.notifications_sent += sent
        logger.info(
            "Scan completed: users=%d, sent=%d, elapsed=%.1fs",
            len(user_ids),
            sent,
            time.monotonic() - started,
        )
        return sent

    async def _sleep_until_next_scan(self) -> None:
        remaining = float(self.config.scan_interval_seconds)
        while self.running and remaining > 0:
            step = min(SLEEP_STEP_SECONDS, remaining)
            await asyncio.sleep(step)
            remaining -= step

    def _handle_shutdown_signal(self, signum: int, frame: object) -> None:
        logger.info("Received shutdown signal %d", signum)
        self.running = False

    def _shutdown(self) -> None:
        logger.info(
            "Worker shutting down: scans=%d, notifications=%d",
            self.scans_completed,
            self.notifications_sent,
        )


def create_default_dependencies(config: NotifierConfig) -> tuple[
    SubscriptionRepository,
    QuotaNotifier,
    TwoTierCache,
]:
    from supabase import create_client

    from voxnote.app.infra.cache.two_tier import create_redis_client
    from voxnote.app.infra.db.supabase_repo import (
        SupabaseSubscriptionRepository,
        SupabaseUsageRepository,
        SupabaseUserProfileRepository,
    )
    from voxnote.app.services.profile_service import ProfileService
    from voxnote.app.services.quota_service import QuotaLedger

    client = create_client(config.supabase_url, config.supabase_key)
    cache = TwoTierCache(redis=create_redis_client(config.redis_url))
    subscriptions = SupabaseSubscriptionRepository(client)

    # WhatsApp sessions live in the API process, so this worker only has the email channel
    notifier = QuotaNotifier(
        subscriptions=subscriptions,
        profiles=ProfileService(SupabaseUserProfileRepository(client), cache),
        ledger=QuotaLedger(SupabaseUsageRepository(client)),
        dashboard_url=config.dashboard_url,
    )
    return subscriptions, notifier, cache


def main() -> None:
    config = get_config()
    errors = config.validate()
    if errors:
        raise ConfigurationError(errors)

    subscriptions, notifier, cache = create_default_dependencies(config)

    worker = QuotaNotifierWorker(
        config=config,
        subscription_repository=subscriptions,
        notifier=notifier,
        cache=cache,
    )

    worker.start()


if __name__ == "__main__":
    main()
