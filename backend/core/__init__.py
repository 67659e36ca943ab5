"""
Progress Billing Core Engine Modules
"""
from .billing_errors import (
    BillingEngineError,
    BillingValidationError,
    BillingConsistencyError,
    PercentOutOfRangeError,
    InvalidAmountError,
    EmptySubmissionError,
    MissingRejectionReasonError,
    InvalidChangeOrderError,
    UnknownLineItemError,
    DuplicateLineItemProgressError,
    UnknownChangeOrderError,
    CatalogLockedError,
    ApplicationLockedError,
    BaselineConflictError,
    ConcurrentModificationError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_percent,
    FinancialPrecisionError
)

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError,
    GuardConditionError,
    TransitionHandlerError
)

from .line_item_catalog import LineItemCatalog
from .percentage_reconciler import ReconciledLine, reconcile
from .payment_aggregator import AggregateResult, aggregate
from .baseline_ledger import BaselineLedger
from .approval_workflow import (
    PaymentApplicationWorkflow,
    TransitionOutcome,
    DeletionPlan,
    DeleteNotAllowedError
)
from .change_order_ledger import (
    add_change_order,
    remove_change_order,
    change_order_total,
    percent_of_contract,
    export_change_orders
)

__all__ = [
    # Errors
    'BillingEngineError',
    'BillingValidationError',
    'BillingConsistencyError',
    'PercentOutOfRangeError',
    'InvalidAmountError',
    'EmptySubmissionError',
    'MissingRejectionReasonError',
    'InvalidChangeOrderError',
    'UnknownLineItemError',
    'DuplicateLineItemProgressError',
    'UnknownChangeOrderError',
    'CatalogLockedError',
    'ApplicationLockedError',
    'BaselineConflictError',
    'ConcurrentModificationError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_percent',
    'FinancialPrecisionError',
    # State Machine
    'StateMachine',
    'StateMachineError',
    'InvalidTransitionError',
    'GuardConditionError',
    'TransitionHandlerError',
    'DeleteNotAllowedError',
    # Engine
    'LineItemCatalog',
    'ReconciledLine',
    'reconcile',
    'AggregateResult',
    'aggregate',
    'BaselineLedger',
    'PaymentApplicationWorkflow',
    'TransitionOutcome',
    'DeletionPlan',
    'add_change_order',
    'remove_change_order',
    'change_order_total',
    'percent_of_contract',
    'export_change_orders',
]
