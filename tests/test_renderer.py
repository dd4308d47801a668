"""
Tests for the result renderer (decryption.renderer.render).
"""

from __future__ import annotations

import pytest

from backend_ivs.core.exceptions import MalformedNotification
from backend_ivs.decryption.models import DataKind, HealthLabel, RiskTier
from backend_ivs.decryption.renderer import render, score_decimal


@pytest.mark.parametrize(
    "raw,decimal,tier",
    [
        (0, "0.000", RiskTier.MINIMAL),
        (1249, "0.124", RiskTier.MINIMAL),
        (1250, "0.125", RiskTier.LOW),
        (2499, "0.249", RiskTier.LOW),
        (2500, "0.250", RiskTier.MEDIUM),
        (4999, "0.499", RiskTier.MEDIUM),
        (5000, "0.500", RiskTier.HIGH),
        (10000, "1.000", RiskTier.HIGH),
    ],
)
def test_score_tier_boundaries(raw, decimal, tier):
    """Thresholds are inclusive at each tier's lower bound."""
    result = render(raw, DataKind.SCORE)
    assert result.decimal == decimal
    assert result.tier is tier
    assert result.health is None


def test_score_rendering_is_total_over_range():
    """Every raw value in [0, 10000] maps to exactly one tier, monotonically."""
    order = [RiskTier.MINIMAL, RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH]
    last = 0
    for raw in range(0, 10001):
        tier = render(raw, DataKind.SCORE).tier
        idx = order.index(tier)
        assert idx >= last
        last = idx
    assert last == 3


def test_score_decimal_truncates():
    """Display truncates to three places instead of rounding up across a boundary."""
    assert score_decimal(1249) == "0.124"
    assert score_decimal(9999) == "0.999"


@pytest.mark.parametrize("raw", [-1, 10001, 2**32 - 1])
def test_score_out_of_range_is_malformed(raw):
    with pytest.raises(MalformedNotification):
        render(raw, DataKind.SCORE)


def test_health_status():
    assert render(1, DataKind.HEALTH_STATUS).health is HealthLabel.INFECTED
    assert render(0, DataKind.HEALTH_STATUS).health is HealthLabel.NOT_INFECTED
    assert render(0, DataKind.HEALTH_STATUS).tier is None


def test_health_status_other_values_are_errors():
    """2 is a data-integrity error, not silently coerced to INFECTED."""
    with pytest.raises(MalformedNotification):
        render(2, DataKind.HEALTH_STATUS)


def test_non_integer_raw_value():
    with pytest.raises(MalformedNotification):
        render(True, DataKind.HEALTH_STATUS)
    with pytest.raises(MalformedNotification):
        render("5000", DataKind.SCORE)


def test_label():
    assert render(5000, DataKind.SCORE).label == "0.500 (HIGH)"
    assert render(1, DataKind.HEALTH_STATUS).label == "INFECTED"
