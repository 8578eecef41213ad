# voxnote/app/services/profile_service.py
"""
User profile reads through the two-tier cache.
Profiles carry preferences only; subscriptions and usage are never cached.
"""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from starlette.concurrency import run_in_threadpool

from voxnote.app.domain.models import NotificationPreferences, SummaryLevel, UserProfile
from voxnote.app.infra.cache.two_tier import STRATEGY_PROFILE, TwoTierCache
from voxnote.app.infra.db.base import UserProfileRepository


def profile_to_dict(profile: UserProfile) -> dict[str, Any]:
    data = asdict(profile)
    data["summary_level"] = profile.summary_level.value
    return data


def profile_from_dict(data: dict[str, Any]) -> UserProfile:
    return UserProfile(
        user_id=data["user_id"],
        email=data.get("email"),
        transcription_language=data.get("transcription_language", "auto"),
        summary_level=SummaryLevel(data.get("summary_level", SummaryLevel.NONE.value)),
        summary_language=data.get("summary_language", "fr"),
        separate_conversation=bool(data.get("separate_conversation", False)),
        notifications=NotificationPreferences(**(data.get("notifications") or {})),
    )


class ProfileService:
    def __init__(self, repository: UserProfileRepository, cache: Optional[TwoTierCache] = None):
        self._repo = repository
        self._cache = cache or TwoTierCache()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        async def load() -> Optional[dict[str, Any]]:
            profile = await run_in_threadpool(self._repo.get_profile, user_id)
            return profile_to_dict(profile) if profile is not None else None

        data = await self._cache.get_or_load(STRATEGY_PROFILE, user_id, load)
        return profile_from_dict(data) if data else None
