# voxnote/app/domain/plans.py
"""
Subscription plan catalog and pricing constants.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PlanTier(str, Enum):
    TRIAL = "trial"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class PlanLimits:
    minutes_per_month: float
    summaries_per_month: int
    max_audio_duration: int  # seconds


@dataclass(frozen=True)
class PlanFeatures:
    multi_language: bool = False
    priority: bool = False
    separate_conversation: bool = False


@dataclass(frozen=True)
class Plan:
    tier: PlanTier
    name: str
    price: float
    limits: PlanLimits
    features: PlanFeatures


TRIAL_DAYS = 7

# Whisper-class pricing, USD
TRANSCRIPTION_COST_PER_MINUTE = 0.006
SUMMARY_COST_BY_LEVEL = {
    "none": 0.0,
    "concise": 0.0002,
    "detailed": 0.0005,
}

PLANS: dict[PlanTier, Plan] = {
    PlanTier.TRIAL: Plan(
        tier=PlanTier.TRIAL,
        name="Free trial",
        price=0.0,
        limits=PlanLimits(minutes_per_month=10, summaries_per_month=10, max_audio_duration=180),
        features=PlanFeatures(),
    ),
    PlanTier.BASIC: Plan(
        tier=PlanTier.BASIC,
        name="Basic",
        price=9.99,
        limits=PlanLimits(minutes_per_month=300, summaries_per_month=300, max_audio_duration=600),
        features=PlanFeatures(multi_language=True),
    ),
    PlanTier.PRO: Plan(
        tier=PlanTier.PRO,
        name="Pro",
        price=29.99,
        limits=PlanLimits(minutes_per_month=1200, summaries_per_month=1200, max_audio_duration=1800),
        features=PlanFeatures(multi_language=True, priority=True, separate_conversation=True),
    ),
    PlanTier.ENTERPRISE: Plan(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        price=99.99,
        limits=PlanLimits(minutes_per_month=6000, summaries_per_month=6000, max_audio_duration=3000),
        features=PlanFeatures(multi_language=True, priority=True, separate_conversation=True),
    ),
}


def get_plan(tier: PlanTier | str) -> Plan:
    return PLANS[PlanTier(tier)]


def transcription_cost(minutes: float) -> float:
    return minutes * TRANSCRIPTION_COST_PER_MINUTE


def summary_cost(level: str) -> float:
    return SUMMARY_COST_BY_LEVEL.get(level, 0.0)
