"""
Result renderer: raw decrypted integer -> decimal score and risk tier, or health label.

Pure and deterministic. Tiers are decided on the exact scaled integer, never on the
truncated display string, so a raw value of 1249 renders "0.124" MINIMAL and 1250
renders "0.125" LOW.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from backend_ivs.core.exceptions import MalformedNotification
from backend_ivs.decryption.models import DataKind, HealthLabel, RenderedResult, RiskTier

SCORE_SCALE = 10_000
"""Transmitted integer = round(score * SCORE_SCALE)."""

DISPLAY_QUANTUM = Decimal("0.001")

# Lower bounds (inclusive), highest first
TIER_THRESHOLDS: tuple[tuple[int, RiskTier], ...] = (
    (5000, RiskTier.HIGH),
    (2500, RiskTier.MEDIUM),
    (1250, RiskTier.LOW),
    (0, RiskTier.MINIMAL),
)


def score_tier(raw_value: int) -> RiskTier:
    """Tier for a scaled score in [0, SCORE_SCALE]."""
    for lower, tier in TIER_THRESHOLDS:
        if raw_value >= lower:
            return tier
    raise MalformedNotification(f"score below zero: {raw_value}")


def score_decimal(raw_value: int) -> str:
    """raw/10000 truncated to 3 places: 5000 -> "0.500", 1249 -> "0.124"."""
    value = (Decimal(raw_value) / Decimal(SCORE_SCALE)).quantize(
        DISPLAY_QUANTUM, rounding=ROUND_DOWN
    )
    return f"{value:.3f}"


def render_score(raw_value: int) -> RenderedResult:
    if not 0 <= raw_value <= SCORE_SCALE:
        raise MalformedNotification(
            f"score raw value {raw_value} outside [0, {SCORE_SCALE}]"
        )
    return RenderedResult(
        kind=DataKind.SCORE,
        raw_value=raw_value,
        decimal=score_decimal(raw_value),
        tier=score_tier(raw_value),
    )


def render_health(raw_value: int) -> RenderedResult:
    # The contract only stores 0 or 1; anything else is a data-integrity problem.
    if raw_value == 1:
        health = HealthLabel.INFECTED
    elif raw_value == 0:
        health = HealthLabel.NOT_INFECTED
    else:
        raise MalformedNotification(f"health status raw value {raw_value} is not 0 or 1")
    return RenderedResult(kind=DataKind.HEALTH_STATUS, raw_value=raw_value, health=health)


def render(raw_value: int, kind: DataKind) -> RenderedResult:
    """
    Render a decrypted value according to its data kind.

    Raises:
        MalformedNotification: raw value out of range for the kind, or non-integer input.
    """
    if isinstance(raw_value, bool) or not isinstance(raw_value, int):
        raise MalformedNotification(f"raw value must be an integer, got {raw_value!r}")
    if kind is DataKind.SCORE:
        return render_score(raw_value)
    if kind is DataKind.HEALTH_STATUS:
        return render_health(raw_value)
    raise MalformedNotification(f"unsupported data kind: {kind!r}")
