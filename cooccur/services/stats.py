"""Co-occurrence statistics for one concept pair.

Everything here is a pure function of the merged counts. Callers must pass
the persisted totals for the pair, never a single upload's delta.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple

Z_95 = 1.96
HALDANE = 0.5

_TWO_PLACES = Decimal("0.01")
_FOUR_PLACES = Decimal("0.0001")


def _quantize(value: float, places: Decimal) -> Decimal:
    if value is None or not math.isfinite(value):
        return Decimal(0).quantize(places)
    return Decimal(repr(float(value))).quantize(places, rounding=ROUND_HALF_UP)


def magnitude(value: float) -> Decimal:
    """Round a count-derived magnitude to 2 places."""
    return _quantize(value, _TWO_PLACES)


def ratio(value: float) -> Decimal:
    """Round a ratio, probability or score to 4 places."""
    return _quantize(value, _FOUR_PLACES)


def safe_div(num: float, den: float) -> float:
    return num / den if den else 0.0


def expected_count(n_a: int, n_b: int, n_total: int) -> float:
    """Expected co-occurrences under independence: nA*nB/N."""
    if n_total <= 0:
        return 0.0
    return (n_a * n_b) / n_total


def lift_interval(ab: int, expected: float) -> Tuple[float, float, float]:
    """
    Lift with a log-normal 95% CI.

    Returns (lift, lower, upper). The interval is (0, 0) unless both the
    observed count and the expectation are positive.
    """
    lift = ab / expected if expected > 0 else 0.0
    if ab <= 0 or expected <= 0:
        return lift, 0.0, 0.0
    spread = Z_95 * math.sqrt(1.0 / ab + 1.0 / expected)
    log_lift = math.log(lift)
    return lift, math.exp(log_lift - spread), math.exp(log_lift + spread)


def z_score(ab: int, expected: float) -> float:
    """Poisson z-score of the observed count against the expectation."""
    if expected <= 0:
        return 0.0
    return (ab - expected) / math.sqrt(expected)


def haldane_cells(ab: int, n_a: int, n_b: int, n_total: int) -> Tuple[float, float, float, float]:
    """2x2 table cells (ab, a_only, b_only, neither) with +0.5 added to each."""
    a_only = max(n_a - ab, 0)
    b_only = max(n_b - ab, 0)
    neither = max(n_total - n_a - n_b + ab, 0)
    return ab + HALDANE, a_only + HALDANE, b_only + HALDANE, neither + HALDANE


def odds_ratio_interval(cells: Tuple[float, float, float, float]) -> Tuple[float, float, float]:
    """Odds ratio and log-OR 95% CI over Haldane-corrected cells."""
    ab_h, a_only_h, b_only_h, neither_h = cells
    odds = (ab_h * neither_h) / (a_only_h * b_only_h)
    se = math.sqrt(sum(1.0 / cell for cell in cells))
    log_or = math.log(odds)
    return odds, math.exp(log_or - Z_95 * se), math.exp(log_or + Z_95 * se)


def wilson_interval(successes: int, n: int, z: float = Z_95) -> Tuple[float, float]:
    """
    Wilson score interval for successes/n.

    Returns (0, 0) when n is 0. Bounds are clamped to [0, 1].
    """
    if n <= 0:
        return 0.0, 0.0
    p = successes / n
    z2 = z * z
    denom = 1 + z2 / n
    center = (p + z2 / (2 * n)) / denom
    half = (z * math.sqrt(p * (1 - p) / n + z2 / (4 * n * n))) / denom
    return max(0.0, center - half), min(1.0, center + half)


def compute_stats(
    ab: int,
    n_a: int,
    n_b: int,
    n_total: int,
    a_before_b: int,
    b_before_a: int,
) -> Dict[str, Decimal]:
    """
    Derive every statistical column of a master record from its counts.

    Args:
        ab: Persons with both concepts (cooc_obs)
        n_a: Persons with concept A
        n_b: Persons with concept B
        n_total: Population size
        a_before_b: Co-occurrences where A came first
        b_before_a: Co-occurrences where B came first

    Returns:
        Dict keyed by MasterRecord column name, values as Decimal
    """
    expected = expected_count(n_a, n_b, n_total)
    lift, lift_lo, lift_hi = lift_interval(ab, expected)

    cells = haldane_cells(ab, n_a, n_b, n_total)
    odds, or_lo, or_hi = odds_ratio_interval(cells)

    dir_n = a_before_b + b_before_a
    direction = safe_div(a_before_b, dir_n)
    dir_lo, dir_hi = wilson_interval(a_before_b, dir_n)

    return {
        "expected_obs": magnitude(expected),
        "lift": ratio(lift),
        "lift_lower_95": ratio(lift_lo),
        "lift_upper_95": ratio(lift_hi),
        "z_score": ratio(z_score(ab, expected)),
        "ab_h": magnitude(cells[0]),
        "a_only_h": magnitude(cells[1]),
        "b_only_h": magnitude(cells[2]),
        "neither_h": magnitude(cells[3]),
        "odds_ratio": ratio(odds),
        "or_lower_95": ratio(or_lo),
        "or_upper_95": ratio(or_hi),
        "directionality_ratio": ratio(direction),
        "dir_lower_95": ratio(dir_lo),
        "dir_upper_95": ratio(dir_hi),
        "confidence_a_to_b": ratio(safe_div(ab, n_a)),
        "confidence_b_to_a": ratio(safe_div(ab, n_b)),
    }


STAT_FIELDS = tuple(compute_stats(0, 0, 0, 0, 0, 0).keys())
