"""
Session Calculator - HP/XP effects of a session.

Pure functions only: (session_type, duration, current_hp) -> numbers and
guidance text. Nothing here touches I/O or keeps state, and nothing raises:
unknown session types fall back to the default tables and negative
durations are treated as zero.

Rounding rule (load-bearing):
    Each tier cost is rounded on its own, half away from zero, using exact
    decimal arithmetic. Rounding per tier and then summing can differ from
    rounding the sum, and binary floats would turn 30 * 1.5 * 0.7 into
    31.499999... instead of 31.5.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
import logging
import math

from .tables import (
    DURATION_TIERS,
    SessionType,
    WELLBEING_MINUTES_PER_HP,
    WELLBEING_MIN_RESTORE,
    WELLBEING_MAX_RESTORE,
    REFERENCE_MATCH,
    REFERENCE_TRAINING,
    REFERENCE_SOCIAL,
    RISKY_HP_FLOOR,
    ALTERNATIVE_HP_BUFFER,
    ALTERNATIVE_DURATIONS,
    MAX_ALTERNATIVES,
    LIGHT_RECOVERY_MAX,
    MODERATE_RECOVERY_MAX,
    hp_parameters_for,
    xp_rate_for,
    is_known_type,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierBreakdown:
    """Minutes spent in each duration tier."""
    tier1_minutes: float = 0
    tier2_minutes: float = 0
    tier3_minutes: float = 0
    tier4_minutes: float = 0


@dataclass(frozen=True)
class SessionCostCalculation:
    """
    HP/XP outcome of one session.

    hp_cost is signed: positive means HP spent, negative means HP restored
    (wellbeing sessions).
    """
    session_type: str
    duration_minutes: float
    hp_cost: int
    xp_gain: float
    base_hp_cost: int
    max_hp_cost: int
    tier1_cost: int = 0
    tier2_cost: int = 0
    tier3_cost: int = 0
    tier4_cost: int = 0
    cap_reached: bool = False
    breakdown: TierBreakdown = field(default_factory=TierBreakdown)

    @property
    def tier_costs(self) -> tuple[int, int, int, int]:
        return (self.tier1_cost, self.tier2_cost, self.tier3_cost, self.tier4_cost)

    @property
    def uncapped_hp_cost(self) -> int:
        """Base plus tier costs before the cap is applied."""
        return self.base_hp_cost + sum(self.tier_costs)

    @property
    def restores_hp(self) -> bool:
        return self.hp_cost < 0


@dataclass(frozen=True)
class SessionPreview:
    """Everything the UI shows before a session starts."""
    pre_session_text: str
    smart_warnings: list[str]
    recommendations: list[str]
    recovery_advice: str
    cost_breakdown: SessionCostCalculation


def calculate_session_costs(session_type: str, duration_minutes: float) -> SessionCostCalculation:
    """
    Calculate HP cost and XP gain for a session.

    Args:
        session_type: match, social_play, training, wellbeing (anything else
            uses the default tables)
        duration_minutes: Session length; negative values count as zero

    Returns:
        SessionCostCalculation with per-tier detail
    """
    if isinstance(session_type, SessionType):
        session_type = session_type.value
    if not is_known_type(session_type):
        logger.debug("Unknown session type %r, using default tables", session_type)

    duration = max(duration_minutes, 0)
    xp_gain = duration * xp_rate_for(session_type)

    if session_type == SessionType.WELLBEING.value:
        hp_restored = max(
            WELLBEING_MIN_RESTORE,
            min(WELLBEING_MAX_RESTORE, math.ceil(duration / WELLBEING_MINUTES_PER_HP)),
        )
        return SessionCostCalculation(
            session_type=session_type,
            duration_minutes=duration,
            hp_cost=-hp_restored,
            xp_gain=xp_gain,
            base_hp_cost=0,
            max_hp_cost=WELLBEING_MAX_RESTORE,
        )

    params = hp_parameters_for(session_type)

    tier_minutes = [_minutes_in_tier(duration, tier.start, tier.span) for tier in DURATION_TIERS]
    tier_costs = [
        _round_half_up(_to_decimal(minutes) * params.per_minute * tier.multiplier)
        for minutes, tier in zip(tier_minutes, DURATION_TIERS)
    ]

    uncapped = params.base_cost + sum(tier_costs)
    hp_cost = min(uncapped, params.max_cost)

    return SessionCostCalculation(
        session_type=session_type,
        duration_minutes=duration,
        hp_cost=hp_cost,
        xp_gain=xp_gain,
        base_hp_cost=params.base_cost,
        max_hp_cost=params.max_cost,
        tier1_cost=tier_costs[0],
        tier2_cost=tier_costs[1],
        tier3_cost=tier_costs[2],
        tier4_cost=tier_costs[3],
        cap_reached=uncapped > params.max_cost,
        breakdown=TierBreakdown(*tier_minutes),
    )


def get_smart_warnings(duration_minutes: float, calculation: SessionCostCalculation) -> list[str]:
    """Warnings about diminishing returns, the HP cap and long-session efficiency."""
    warnings = []
    breakdown = calculation.breakdown

    if duration_minutes > 30:
        reductions = ""
        if breakdown.tier2_minutes > 0:
            reductions += "30% less"
        if breakdown.tier3_minutes > 0:
            reductions += ", then 60% less"
        if breakdown.tier4_minutes > 0:
            reductions += ", then 80% less"
        warnings.append(f"💡 After 30min, additional time has minimal HP cost ({reductions})")

    if calculation.cap_reached:
        warnings.append(
            f"⚡ Intensity peaks early - HP cost capped at {calculation.max_hp_cost} HP"
        )

    if duration_minutes > 60:
        efficiency = _round_half_up(
            _to_decimal(calculation.hp_cost) / _to_decimal(duration_minutes),
            places=2,
        )
        warnings.append(
            f"⏱️ {_format_number(duration_minutes)}min session has "
            f"{_format_number(efficiency)} HP cost per minute (most cost in first 30min)"
        )

    return warnings


def get_hp_recommendations(current_hp: float, session_type: str | None = None) -> list[str]:
    """
    Capacity guidance for the player's current HP.

    Counts how many reference sessions (90min match, 60min training,
    45min social) the HP covers, then adds one low-HP line when the
    player cannot afford the more intense types. `session_type` is
    accepted for call-site symmetry; guidance covers all types.
    """
    recommendations = []

    match_cost = calculate_session_costs(*REFERENCE_MATCH).hp_cost
    training_cost = calculate_session_costs(*REFERENCE_TRAINING).hp_cost
    social_cost = calculate_session_costs(*REFERENCE_SOCIAL).hp_cost

    match_capacity = math.floor(current_hp / match_cost)
    training_capacity = math.floor(current_hp / training_cost)
    social_capacity = math.floor(current_hp / social_cost)

    if current_hp >= match_cost:
        plural = "es" if match_capacity > 1 else ""
        recommendations.append(
            f"✅ Current HP supports {match_capacity} match{plural} (90min each)"
        )

    if current_hp >= training_cost:
        plural = "s" if training_capacity > 1 else ""
        recommendations.append(
            f"✅ Current HP supports {training_capacity} training session{plural} (60min each)"
        )

    if current_hp >= social_cost:
        plural = "s" if social_capacity > 1 else ""
        recommendations.append(
            f"✅ Current HP supports {social_capacity} social session{plural} (45min each)"
        )

    if match_cost > current_hp >= training_cost:
        recommendations.append("⚠️ HP too low for matches - stick to training/social sessions")
    elif training_cost > current_hp >= social_cost:
        recommendations.append("⚠️ HP too low for intense activities - social sessions recommended")
    elif current_hp < social_cost:
        recommendations.append("🔋 HP critically low - prioritize wellbeing sessions for recovery")

    return recommendations


def get_recovery_advice(hp_cost: int) -> str:
    """Suggest a wellbeing session that offsets an HP cost."""
    if hp_cost <= 0:
        return ""

    # Roughly 1 HP back per 5 minutes of wellbeing
    minutes_needed = math.ceil(hp_cost / WELLBEING_MINUTES_PER_HP) * WELLBEING_MINUTES_PER_HP

    if hp_cost <= LIGHT_RECOVERY_MAX:
        return f"🔋 Light recovery: {minutes_needed}min wellbeing session will offset this activity"
    if hp_cost <= MODERATE_RECOVERY_MAX:
        return (
            f"🔋 Moderate recovery: {minutes_needed}min wellbeing session "
            "recommended after this activity"
        )
    return (
        f"🔋 Significant recovery: Plan {minutes_needed}min+ wellbeing session "
        "to fully recover from this intensive activity"
    )


def format_session_preview(
    session_type: str,
    duration_minutes: float,
    current_hp: float,
) -> SessionPreview:
    """Build the complete pre-session preview."""
    calculation = calculate_session_costs(session_type, duration_minutes)
    duration_text = format_duration(calculation.duration_minutes)
    name = session_display_name(calculation.session_type)

    if calculation.hp_cost <= 0:
        text = (
            f"🔋 {duration_text} {name} ≈ +{_format_number(calculation.xp_gain)} XP, "
            f"+{abs(calculation.hp_cost)} HP restored"
        )
    else:
        text = (
            f"⚡ {duration_text} {name} ≈ +{_format_number(calculation.xp_gain)} XP, "
            f"-{calculation.hp_cost} HP"
        )
        if calculation.cap_reached:
            text += " (intensity peaks early)"

    return SessionPreview(
        pre_session_text=text,
        smart_warnings=get_smart_warnings(calculation.duration_minutes, calculation),
        recommendations=get_hp_recommendations(current_hp, session_type),
        recovery_advice=get_recovery_advice(calculation.hp_cost),
        cost_breakdown=calculation,
    )


def is_session_too_risky(current_hp: float, session_type: str, duration_minutes: float) -> bool:
    """True if the session would leave fewer than 10 HP."""
    calculation = calculate_session_costs(session_type, duration_minutes)
    return current_hp - calculation.hp_cost < RISKY_HP_FLOOR


def suggest_alternative_durations(
    current_hp: float,
    session_type: str,
    original_duration: float,
) -> list[int]:
    """
    Shorter durations that keep at least 20 HP in reserve.

    Returns up to the two longest qualifying candidates below the original.
    """
    alternatives = []
    for duration in ALTERNATIVE_DURATIONS:
        if duration >= original_duration:
            break
        calculation = calculate_session_costs(session_type, duration)
        if current_hp - calculation.hp_cost >= ALTERNATIVE_HP_BUFFER:
            alternatives.append(duration)
    return alternatives[-MAX_ALTERNATIVES:]


def session_display_name(session_type: str) -> str:
    if session_type == SessionType.SOCIAL_PLAY.value:
        return "social session"
    if session_type == SessionType.WELLBEING.value:
        return "wellbeing session"
    return session_type


def format_duration(duration_minutes: float) -> str:
    """90 -> '1h30m', 120 -> '2h', 45 -> '45min'."""
    hours = math.floor(duration_minutes / 60)
    minutes = duration_minutes % 60
    if hours > 0:
        return f"{hours}h{_format_number(minutes)}m" if minutes > 0 else f"{hours}h"
    return f"{_format_number(duration_minutes)}min"


# =============================================================================
# Numeric helpers
# =============================================================================

def _minutes_in_tier(duration: float, start: int, span: int | None) -> float:
    remaining = duration - start
    if remaining <= 0:
        return 0
    if span is None:
        return remaining
    return min(remaining, span)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _round_half_up(value: Decimal, places: int = 0):
    """Round half away from zero; returns int for places=0."""
    exponent = Decimal(1).scaleb(-places)
    rounded = value.quantize(exponent, rounding=ROUND_HALF_UP)
    if places == 0:
        return int(rounded)
    return rounded


def _format_number(value) -> str:
    """Render 45 as '45', 45.0 as '45' and 0.67 as '0.67'."""
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return f"{value:g}" if isinstance(value, float) else str(value)
