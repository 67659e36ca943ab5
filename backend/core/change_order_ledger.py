"""
CHANGE ORDER LEDGER

Out-of-scope work attached to a payment application for reporting. Change
orders never touch line items or the application's grand_total; they only feed
the optional change-order page of the generated document.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
import logging
import math
import uuid

from models import ApplicationStatus, ChangeOrder, PaymentApplication, utcnow
from core.billing_errors import (
    ApplicationLockedError, InvalidChangeOrderError, UnknownChangeOrderError, json_safe
)
from core.financial_precision import (
    ZERO, FinancialPrecisionError, percent_of, safe_add, to_decimal, to_float
)

logger = logging.getLogger(__name__)


def _ensure_open(app: PaymentApplication, action: str) -> None:
    if app.status in ApplicationStatus.LOCKED:
        raise ApplicationLockedError(app.id, app.status, action)


def add_change_order(
    app: PaymentApplication,
    description: str,
    amount: float,
    percentage: Optional[float] = None,
    contract_value: Optional[float] = None,
    change_order_id: Optional[str] = None
) -> PaymentApplication:
    """
    Attach a change order. When `percentage` is omitted it is derived from
    `contract_value` (amount / contract value * 100), else 0.
    """
    _ensure_open(app, "add_change_order")

    if not description or not description.strip():
        raise InvalidChangeOrderError("description", "Change order description is required")
    try:
        amount_value = to_decimal(amount)
    except FinancialPrecisionError:
        raise InvalidChangeOrderError("amount", f"Change order amount is not a number: {amount}")
    if not amount_value.is_finite() or amount_value <= ZERO:
        raise InvalidChangeOrderError(
            "amount", f"Change order amount must be a finite positive number, got {amount}",
            {"value": json_safe(amount)}
        )

    if percentage is None:
        percentage = float(percent_of(amount_value, contract_value)) if contract_value else 0.0
    elif not math.isfinite(percentage):
        raise InvalidChangeOrderError(
            "percentage", f"Change order percentage must be finite, got {percentage}",
            {"value": json_safe(percentage)}
        )

    change_order = ChangeOrder(
        id=change_order_id or uuid.uuid4().hex,
        description=description.strip(),
        amount=amount,
        percentage=percentage
    )

    logger.info(f"[CHANGE_ORDER] Application {app.id}: added {change_order.id} ({amount})")
    return app.model_copy(update={
        "change_orders": list(app.change_orders) + [change_order],
        "include_change_order_page": True,
        "updated_at": utcnow(),
        "version": app.version + 1
    })


def remove_change_order(app: PaymentApplication, change_order_id: str) -> PaymentApplication:
    _ensure_open(app, "remove_change_order")

    remaining = [co for co in app.change_orders if co.id != change_order_id]
    if len(remaining) == len(app.change_orders):
        raise UnknownChangeOrderError(change_order_id, app.id)

    logger.info(f"[CHANGE_ORDER] Application {app.id}: removed {change_order_id}")
    return app.model_copy(update={
        "change_orders": remaining,
        "include_change_order_page": bool(remaining),
        "updated_at": utcnow(),
        "version": app.version + 1
    })


def change_order_total(app: PaymentApplication) -> Decimal:
    return safe_add(*(co.amount for co in app.change_orders))


def percent_of_contract(app: PaymentApplication, contract_value: float) -> Decimal:
    """Total change orders as a percent of contract value; 0 for a zero contract."""
    return percent_of(change_order_total(app), contract_value)


def export_change_orders(app: PaymentApplication) -> Dict[str, Any]:
    """Shape consumed by the document generator."""
    return {
        "change_orders": [
            {
                "description": co.description,
                "amount": to_float(co.amount),
                "percentage": to_float(co.percentage)
            }
            for co in app.change_orders
        ],
        "include_change_order_page": app.include_change_order_page
    }
