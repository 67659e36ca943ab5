"""
PAYMENT APPLICATION AGGREGATOR

Runs the reconciler over every line of one payment application and totals the
continuation sheet.

- grand_total = SUM(current_payment)
- is_balanced = |SUM(scheduled_value) - contract_amount| <= 0.01  (informational)
- change orders are reported beside the total, never inside it

A progress entry that references a line item missing from the catalog aborts
the whole aggregation; there is no partial result.
"""

from decimal import Decimal
from typing import Any, Dict, List, Tuple
import logging

from pydantic import BaseModel

from models import PaymentApplication
from core.billing_errors import DuplicateLineItemProgressError
from core.financial_precision import ZERO, safe_add, to_float
from core.line_item_catalog import LineItemCatalog
from core.percentage_reconciler import ReconciledLine, reconcile

logger = logging.getLogger(__name__)


class AggregateResult(BaseModel):
    application_id: str
    contract_id: str
    lines: Tuple[ReconciledLine, ...]
    grand_total: Decimal
    is_balanced: bool
    contract_amount: Decimal
    total_scheduled_value: Decimal
    total_previous_amount: Decimal
    total_this_period_amount: Decimal
    total_material_stored: Decimal
    total_completed: Decimal
    total_balance_to_finish: Decimal
    change_order_total: Decimal = ZERO
    warnings: Tuple[Dict[str, str], ...] = ()

    class Config:
        frozen = True

    @property
    def display_total(self) -> Decimal:
        """Grand total with change orders added, for display only."""
        return self.grand_total + self.change_order_total

    def to_display(self) -> Dict[str, Any]:
        return {
            "application_id": self.application_id,
            "contract_id": self.contract_id,
            "lines": [line.to_display() for line in self.lines],
            "grand_total": to_float(self.grand_total),
            "is_balanced": self.is_balanced,
            "contract_amount": to_float(self.contract_amount),
            "total_scheduled_value": to_float(self.total_scheduled_value),
            "total_previous_amount": to_float(self.total_previous_amount),
            "total_this_period_amount": to_float(self.total_this_period_amount),
            "total_material_stored": to_float(self.total_material_stored),
            "total_completed": to_float(self.total_completed),
            "total_balance_to_finish": to_float(self.total_balance_to_finish),
            "change_order_total": to_float(self.change_order_total),
            "display_total": to_float(self.display_total),
            "warnings": [dict(w) for w in self.warnings]
        }


def aggregate(application: PaymentApplication, catalog: LineItemCatalog) -> AggregateResult:
    """
    Reconcile every line of the application against the catalog.

    Raises:
        UnknownLineItemError: progress references a line item not in the catalog
        DuplicateLineItemProgressError: a line item appears twice
        PercentOutOfRangeError / InvalidAmountError: from the reconciler
    """
    seen = set()
    lines: List[ReconciledLine] = []

    for progress in application.line_items:
        if progress.line_item_id in seen:
            raise DuplicateLineItemProgressError(progress.line_item_id, application.id)
        seen.add(progress.line_item_id)

        line_item = catalog.get(progress.line_item_id)
        lines.append(reconcile(line_item, progress))

    grand_total = safe_add(*(line.current_payment for line in lines))
    is_balanced = catalog.is_balanced()

    if not is_balanced:
        logger.warning(
            f"[AGGREGATOR] Contract {catalog.contract_id}: scheduled values "
            f"{to_float(catalog.scheduled_total())} do not match contract amount "
            f"{to_float(catalog.contract_amount)}"
        )

    warnings = tuple(
        {"line_item_id": line.line_item_id, "warning": warning}
        for line in lines
        for warning in line.warnings
    )

    change_order_total = safe_add(*(co.amount for co in application.change_orders))

    logger.debug(
        f"[AGGREGATOR] Application {application.id}: {len(lines)} lines, "
        f"grand_total={to_float(grand_total)}"
    )

    return AggregateResult(
        application_id=application.id,
        contract_id=catalog.contract_id,
        lines=tuple(lines),
        grand_total=grand_total,
        is_balanced=is_balanced,
        contract_amount=catalog.contract_amount,
        total_scheduled_value=safe_add(*(line.scheduled_value for line in lines)),
        total_previous_amount=safe_add(*(line.previous_amount for line in lines)),
        total_this_period_amount=safe_add(*(line.this_period_amount for line in lines)),
        total_material_stored=safe_add(*(line.material_stored for line in lines)),
        total_completed=safe_add(*(line.total_completed for line in lines)),
        total_balance_to_finish=safe_add(*(line.balance_to_finish for line in lines)),
        change_order_total=change_order_total,
        warnings=warnings
    )
