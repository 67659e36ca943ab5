"""
BILLING ENGINE ERROR TAXONOMY

Three families:
1. Validation errors   - bad input, recoverable by the caller (carry `field`)
2. Consistency errors  - corrupted or conflicting data, fatal to the operation
3. State machine errors - defined in core.state_machine, same base class

Data-integrity warnings (unbalanced catalog, clamped percentages) are never raised;
they travel as data on the computed results.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
import math


def json_safe(value: Any) -> Any:
    """NaN and Infinity have no JSON form; report them as text."""
    if isinstance(value, Decimal) and not value.is_finite():
        return str(value)
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    return value


class BillingEngineError(Exception):
    """Base exception for every named engine error."""

    kind = "BILLING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "kind": self.kind,
            "message": self.message,
            **self.details
        }


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class BillingValidationError(BillingEngineError):
    """Raised when an input value is rejected. Never silently coerced."""

    kind = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.field = field
        details = dict(details or {})
        details.setdefault("field", field)
        super().__init__(message, details)


class PercentOutOfRangeError(BillingValidationError):
    kind = "PERCENT_OUT_OF_RANGE"

    def __init__(self, field: str, value: Any):
        self.value = value
        super().__init__(
            field,
            f"'{field}' must be between 0 and 100, got {value}",
            {"value": json_safe(value)}
        )


class InvalidAmountError(BillingValidationError):
    """Raised for negative or non-finite currency values."""

    kind = "INVALID_AMOUNT"

    def __init__(self, field: str, value: Any):
        self.value = value
        super().__init__(
            field,
            f"'{field}' must be a finite non-negative amount, got {value}",
            {"value": json_safe(value)}
        )


class EmptySubmissionError(BillingValidationError):
    kind = "EMPTY_SUBMISSION"

    def __init__(self, application_id: str, from_state: str):
        self.application_id = application_id
        self.from_state = from_state
        super().__init__(
            "line_items",
            "Submission has no progress: at least one line item must advance past its "
            "previous percent or report stored material",
            {"application_id": application_id, "from_state": from_state, "action": "submit"}
        )


class MissingRejectionReasonError(BillingValidationError):
    kind = "MISSING_REJECTION_REASON"

    def __init__(self, application_id: str, from_state: str):
        self.application_id = application_id
        self.from_state = from_state
        super().__init__(
            "reason",
            "A rejection reason is required",
            {"application_id": application_id, "from_state": from_state, "action": "reject"}
        )


class InvalidChangeOrderError(BillingValidationError):
    kind = "INVALID_CHANGE_ORDER"


# =============================================================================
# CONSISTENCY ERRORS
# =============================================================================

class BillingConsistencyError(BillingEngineError):
    """Raised when stored data contradicts itself. The whole operation aborts."""

    kind = "CONSISTENCY_ERROR"


class UnknownLineItemError(BillingConsistencyError):
    kind = "UNKNOWN_LINE_ITEM"

    def __init__(self, line_item_id: str, contract_id: Optional[str] = None):
        self.line_item_id = line_item_id
        self.contract_id = contract_id
        super().__init__(
            f"Line item {line_item_id} is not in the catalog for contract {contract_id}",
            {"line_item_id": line_item_id, "contract_id": contract_id}
        )


class DuplicateLineItemProgressError(BillingConsistencyError):
    kind = "DUPLICATE_LINE_ITEM_PROGRESS"

    def __init__(self, line_item_id: str, application_id: Optional[str] = None):
        self.line_item_id = line_item_id
        super().__init__(
            f"Line item {line_item_id} appears more than once in application {application_id}",
            {"line_item_id": line_item_id, "application_id": application_id}
        )


class UnknownChangeOrderError(BillingConsistencyError):
    kind = "UNKNOWN_CHANGE_ORDER"

    def __init__(self, change_order_id: str, application_id: Optional[str] = None):
        self.change_order_id = change_order_id
        super().__init__(
            f"Change order {change_order_id} not found on application {application_id}",
            {"change_order_id": change_order_id, "application_id": application_id}
        )


class CatalogLockedError(BillingConsistencyError):
    kind = "CATALOG_LOCKED"

    def __init__(self, contract_id: str, application_id: str):
        super().__init__(
            f"Line items for contract {contract_id} are locked: "
            f"payment application {application_id} is past draft",
            {"contract_id": contract_id, "application_id": application_id}
        )


class ApplicationLockedError(BillingConsistencyError):
    kind = "APPLICATION_LOCKED"

    def __init__(self, application_id: str, status: str, action: str):
        self.application_id = application_id
        self.status = status
        self.action = action
        super().__init__(
            f"Payment application {application_id} is '{status}' and cannot be changed ({action})",
            {"application_id": application_id, "from_state": status, "action": action}
        )


class BaselineConflictError(BillingConsistencyError):
    kind = "BASELINE_CONFLICT"


class ConcurrentModificationError(BillingConsistencyError):
    kind = "CONCURRENT_MODIFICATION"

    def __init__(self, application_id: str, expected_status: str, expected_version: int):
        super().__init__(
            f"Payment application {application_id} changed while "
            f"'{expected_status}' (version {expected_version}) was being updated",
            {
                "application_id": application_id,
                "expected_status": expected_status,
                "expected_version": expected_version
            }
        )
