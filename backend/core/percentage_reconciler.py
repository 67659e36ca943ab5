"""
PERCENTAGE RECONCILER

Turns one line item's previous / verified percentages into the dollar breakdown
of a continuation sheet row.

LOCKED FORMULAS (Decimal, unrounded):
- this_period_percent = max(0, pm_verified_percent - previous_percent)
- previous_amount     = previous_percent / 100 * scheduled_value
- this_period_amount  = this_period_percent / 100 * scheduled_value
- total_completed     = previous_amount + this_period_amount + material_stored
- percent_complete    = total_completed / scheduled_value * 100  (0 if scheduled_value is 0)
- balance_to_finish   = scheduled_value - total_completed
- current_payment     = this_period_amount

Rounding happens only in ReconciledLine.to_display().
"""

from decimal import Decimal
from typing import Any, Dict, Tuple
import logging

from pydantic import BaseModel

from models import LineItem, LineItemProgress
from core.financial_precision import (
    ZERO, calculate_percentage, percent_of, safe_add, to_decimal, to_float,
    validate_non_negative, validate_percent
)

logger = logging.getLogger(__name__)

# Line warnings
VERIFIED_BELOW_PREVIOUS = "VERIFIED_BELOW_PREVIOUS"
MATERIAL_ON_ZERO_VALUE_LINE = "MATERIAL_ON_ZERO_VALUE_LINE"


class ReconciledLine(BaseModel):
    line_item_id: str
    item_number: str = ""
    description: str = ""
    scheduled_value: Decimal
    submitted_percent: Decimal
    pm_verified_percent: Decimal
    previous_percent: Decimal
    this_period_percent: Decimal
    previous_amount: Decimal
    this_period_amount: Decimal
    material_stored: Decimal
    total_completed: Decimal
    percent_complete: Decimal
    balance_to_finish: Decimal
    current_payment: Decimal
    warnings: Tuple[str, ...] = ()

    class Config:
        frozen = True

    def to_display(self) -> Dict[str, Any]:
        """Currency rounded to cents; percentages rounded to 2 places."""
        return {
            "line_item_id": self.line_item_id,
            "item_number": self.item_number,
            "description": self.description,
            "scheduled_value": to_float(self.scheduled_value),
            "submitted_percent": to_float(self.submitted_percent),
            "pm_verified_percent": to_float(self.pm_verified_percent),
            "previous_percent": to_float(self.previous_percent),
            "this_period_percent": to_float(self.this_period_percent),
            "previous_amount": to_float(self.previous_amount),
            "this_period_amount": to_float(self.this_period_amount),
            "material_stored": to_float(self.material_stored),
            "total_completed": to_float(self.total_completed),
            "percent_complete": to_float(self.percent_complete),
            "balance_to_finish": to_float(self.balance_to_finish),
            "current_payment": to_float(self.current_payment),
            "warnings": list(self.warnings)
        }


def reconcile(line_item: LineItem, progress: LineItemProgress) -> ReconciledLine:
    """
    Reconcile one line item's progress against its scheduled value.

    Raises:
        InvalidAmountError: negative or non-finite scheduled_value or material_stored
        PercentOutOfRangeError: any percent outside 0-100, or NaN
    """
    scheduled_value = validate_non_negative(line_item.scheduled_value, "scheduled_value")
    material_stored = validate_non_negative(progress.material_stored, "material_stored")
    submitted = validate_percent(progress.submitted_percent, "submitted_percent")
    previous = validate_percent(progress.previous_percent, "previous_percent")
    verified = validate_percent(progress.pm_verified_percent, "pm_verified_percent")

    warnings = []

    if verified < previous:
        # Never pay negative; the reviewer sees the warning
        warnings.append(VERIFIED_BELOW_PREVIOUS)
        logger.warning(
            f"[RECONCILER] Line {line_item.id}: verified {verified}% is below "
            f"previous {previous}%, clamping this period to 0"
        )
    this_period_percent = max(ZERO, verified - previous)

    if scheduled_value == ZERO:
        if material_stored > ZERO:
            warnings.append(MATERIAL_ON_ZERO_VALUE_LINE)
            logger.warning(
                f"[RECONCILER] Line {line_item.id}: stored material {material_stored} "
                f"reported on a zero-value line, ignored"
            )
        material_stored = ZERO
        previous_amount = ZERO
        this_period_amount = ZERO
        total_completed = ZERO
        percent_complete = ZERO
        balance_to_finish = ZERO
    else:
        previous_amount = calculate_percentage(scheduled_value, previous)
        this_period_amount = calculate_percentage(scheduled_value, this_period_percent)
        total_completed = safe_add(previous_amount, this_period_amount, material_stored)
        percent_complete = percent_of(total_completed, scheduled_value)
        balance_to_finish = scheduled_value - total_completed

    return ReconciledLine(
        line_item_id=line_item.id,
        item_number=line_item.item_number or "",
        description=line_item.description,
        scheduled_value=scheduled_value,
        submitted_percent=submitted,
        pm_verified_percent=verified,
        previous_percent=previous,
        this_period_percent=this_period_percent,
        previous_amount=previous_amount,
        this_period_amount=this_period_amount,
        material_stored=material_stored,
        total_completed=total_completed,
        percent_complete=percent_complete,
        balance_to_finish=balance_to_finish,
        current_payment=this_period_amount,
        warnings=tuple(warnings)
    )
