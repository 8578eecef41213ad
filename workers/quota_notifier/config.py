# workers/quota_notifier/config.py
"""
Configuration for the quota notification worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class NotifierConfig:
    """Configuration for the quota notification worker."""

    worker_id: str = os.getenv("WORKER_ID", f"quota-notifier-{os.getpid()}")

    # Scan schedule
    scan_interval_seconds: int = int(os.getenv("QUOTA_SCAN_INTERVAL", "3600"))
    run_once: bool = os.getenv("QUOTA_SCAN_RUN_ONCE", "false").lower() == "true"

    # Links in notification bodies
    dashboard_url: str = os.getenv("DASHBOARD_URL", "https://voxnote.app/dashboard")

    # Optional distributed cache for profile reads
    redis_url: str = os.getenv("REDIS_URL", "")

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if self.scan_interval_seconds <= 0:
            errors.append("QUOTA_SCAN_INTERVAL must be positive")

        return errors


def get_config() -> NotifierConfig:
    """Get worker configuration from environment."""
    return NotifierConfig()
