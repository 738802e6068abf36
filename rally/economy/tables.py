"""
Economy Tables - Tuning constants for the HP/XP session economy.

These values mirror the reward logic stored in the database, so every
client preview matches what is actually charged when a session completes.

HP model:
- Each session type has a flat base cost, a per-minute cost and a hard cap
- Minutes are split into four tiers with decreasing multipliers
  (diminishing returns for long sessions)
- Wellbeing sessions restore HP instead of costing it

XP model:
- Linear in duration, never capped
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class SessionType(str, Enum):
    """Known session types."""
    MATCH = "match"
    SOCIAL_PLAY = "social_play"
    TRAINING = "training"
    WELLBEING = "wellbeing"


@dataclass(frozen=True)
class HPParameters:
    """HP cost parameters for one session type."""
    base_cost: int
    per_minute: Decimal
    max_cost: int


@dataclass(frozen=True)
class DurationTier:
    """
    A contiguous band of minutes with its own HP multiplier.

    `span` is the tier width in minutes; None means unbounded.
    """
    start: int
    span: int | None
    multiplier: Decimal


# Minutes 0-30 full intensity, 31-60 at 0.7x, 61-120 at 0.4x, 120+ at 0.2x
DURATION_TIERS: tuple[DurationTier, ...] = (
    DurationTier(start=0, span=30, multiplier=Decimal("1.0")),
    DurationTier(start=30, span=30, multiplier=Decimal("0.7")),
    DurationTier(start=60, span=60, multiplier=Decimal("0.4")),
    DurationTier(start=120, span=None, multiplier=Decimal("0.2")),
)

HP_PARAMETERS: dict[str, HPParameters] = {
    SessionType.MATCH.value: HPParameters(base_cost=10, per_minute=Decimal("1.5"), max_cost=60),
    SessionType.SOCIAL_PLAY.value: HPParameters(base_cost=5, per_minute=Decimal("1.0"), max_cost=40),
    SessionType.TRAINING.value: HPParameters(base_cost=8, per_minute=Decimal("1.2"), max_cost=35),
}
DEFAULT_HP_PARAMETERS = HPParameters(base_cost=5, per_minute=Decimal("1.0"), max_cost=30)

XP_PER_MINUTE: dict[str, int] = {
    SessionType.TRAINING.value: 12,
    SessionType.MATCH.value: 8,
    SessionType.SOCIAL_PLAY.value: 8,
    SessionType.WELLBEING.value: 5,
}
DEFAULT_XP_PER_MINUTE = 5

# Wellbeing: 1 HP per 5 minutes, clamped
WELLBEING_MINUTES_PER_HP = 5
WELLBEING_MIN_RESTORE = 5
WELLBEING_MAX_RESTORE = 25

# Reference sessions used for capacity recommendations: (type, minutes)
REFERENCE_MATCH = (SessionType.MATCH.value, 90)
REFERENCE_TRAINING = (SessionType.TRAINING.value, 60)
REFERENCE_SOCIAL = (SessionType.SOCIAL_PLAY.value, 45)

# Risk thresholds are absolute HP units, not percentages of max HP
RISKY_HP_FLOOR = 10
ALTERNATIVE_HP_BUFFER = 20
ALTERNATIVE_DURATIONS: tuple[int, ...] = (15, 30, 45, 60, 90, 120)
MAX_ALTERNATIVES = 2

# Recovery advice buckets (upper bounds, inclusive)
LIGHT_RECOVERY_MAX = 15
MODERATE_RECOVERY_MAX = 35


def hp_parameters_for(session_type: str) -> HPParameters:
    """HP parameters for a type, falling back to the default table."""
    return HP_PARAMETERS.get(_type_key(session_type), DEFAULT_HP_PARAMETERS)


def xp_rate_for(session_type: str) -> int:
    """XP per minute for a type, falling back to the default rate."""
    return XP_PER_MINUTE.get(_type_key(session_type), DEFAULT_XP_PER_MINUTE)


def is_known_type(session_type: str) -> bool:
    return _type_key(session_type) in {t.value for t in SessionType}


def _type_key(session_type: str) -> str:
    if isinstance(session_type, SessionType):
        return session_type.value
    return session_type
