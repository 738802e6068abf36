"""
Economy Module - HP/XP effects of tennis sessions.

Turns a session's type and duration into:
- HP cost (or restoration for wellbeing sessions)
- XP gain
- Warnings, capacity recommendations and recovery advice

All functions are pure and deterministic.
"""

from .tables import SessionType, HPParameters, DurationTier, DURATION_TIERS
from .calculator import (
    SessionCostCalculation,
    SessionPreview,
    TierBreakdown,
    calculate_session_costs,
    get_smart_warnings,
    get_hp_recommendations,
    get_recovery_advice,
    format_session_preview,
    is_session_too_risky,
    suggest_alternative_durations,
)

__all__ = [
    "SessionType",
    "HPParameters",
    "DurationTier",
    "DURATION_TIERS",
    "SessionCostCalculation",
    "SessionPreview",
    "TierBreakdown",
    "calculate_session_costs",
    "get_smart_warnings",
    "get_hp_recommendations",
    "get_recovery_advice",
    "format_session_preview",
    "is_session_too_risky",
    "suggest_alternative_durations",
]
