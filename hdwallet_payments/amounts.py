"""
Payment amount verification.

Client-side float formatting and exchange-rate rounding make exact equality
brittle, so a received amount is accepted when any of these hold:

1. Both amounts render identically at 6 decimal places.
2. The difference fits inside the tier tolerance: a percentage of the expected
   amount (0.001% below 0.001, 0.002% below 0.01, 0.003% otherwise), capped by
   an absolute ceiling of 0.000002.
3. The amounts differ by at most one unit in the 6th decimal after rounding.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from .exceptions import ValidationError
from .utils import to_decimal

logger = logging.getLogger(__name__)

PRECISION_PLACES = 6
ABSOLUTE_TOLERANCE = Decimal("0.000002")

# (upper bound of expected amount, tolerance in percent)
PERCENT_TIERS = (
    (Decimal("0.001"), Decimal("0.001")),
    (Decimal("0.01"), Decimal("0.002")),
)
DEFAULT_PERCENT = Decimal("0.003")

_QUANTUM = Decimal(1).scaleb(-PRECISION_PLACES)
_MICRO = Decimal(10) ** PRECISION_PLACES


@dataclass
class AmountComparison:
    expected: Optional[Decimal]
    actual: Optional[Decimal]
    difference: Optional[Decimal] = None
    tolerance: Optional[Decimal] = None
    exact_match: bool = False
    within_tolerance: bool = False
    off_by_one: bool = False
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.exact_match or self.within_tolerance or self.off_by_one

    def to_dict(self) -> dict[str, Any]:
        return {
            "expected": str(self.expected) if self.expected is not None else None,
            "actual": str(self.actual) if self.actual is not None else None,
            "difference": str(self.difference) if self.difference is not None else None,
            "tolerance": str(self.tolerance) if self.tolerance is not None else None,
            "exactMatch": self.exact_match,
            "withinTolerance": self.within_tolerance,
            "offByOne": self.off_by_one,
            "matched": self.matched,
        }


def tolerance_for(expected: Decimal) -> Decimal:
    """Largest accepted absolute difference for an expected amount."""
    percent = DEFAULT_PERCENT
    for upper_bound, tier_percent in PERCENT_TIERS:
        if expected < upper_bound:
            percent = tier_percent
            break
    return min(ABSOLUTE_TOLERANCE, expected * percent / 100)


def compare_amounts(expected: Any, actual: Any) -> AmountComparison:
    """Compare two amounts and report which acceptance rule, if any, matched."""
    try:
        expected_dec = to_decimal(expected, "expected")
        actual_dec = to_decimal(actual, "actual")
    except ValidationError as e:
        return AmountComparison(expected=None, actual=None, error=e.message)

    result = AmountComparison(expected=expected_dec, actual=actual_dec)
    result.difference = abs(expected_dec - actual_dec)
    result.exact_match = expected_dec.quantize(_QUANTUM, rounding=ROUND_HALF_UP) == actual_dec.quantize(
        _QUANTUM, rounding=ROUND_HALF_UP
    )
    if expected_dec > 0:
        result.tolerance = tolerance_for(expected_dec)
        result.within_tolerance = result.difference <= result.tolerance

    expected_micro = (expected_dec * _MICRO).to_integral_value(rounding=ROUND_HALF_UP)
    actual_micro = (actual_dec * _MICRO).to_integral_value(rounding=ROUND_HALF_UP)
    result.off_by_one = abs(expected_micro - actual_micro) <= 1
    return result


def is_payment_amount_correct(expected: Any, actual: Any) -> bool:
    """Return True when ``actual`` is an acceptable payment of ``expected``."""
    result = compare_amounts(expected, actual)
    if result.error:
        logger.warning("Amount comparison rejected invalid input: %s", result.error)
        return False
    logger.debug("Amount comparison: %s", result.to_dict())
    return result.matched
