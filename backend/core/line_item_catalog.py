"""
LINE ITEM CATALOG

Per-contract list of billable line items with their scheduled values.
Read-only to the billing engine; edits are refused once any payment
application against the contract has left draft.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional
import logging

from models import ApplicationStatus, LineItem, PaymentApplication
from core.billing_errors import CatalogLockedError, UnknownLineItemError
from core.financial_precision import (
    BALANCE_EPSILON, amounts_match, safe_add, to_decimal, validate_non_negative
)

logger = logging.getLogger(__name__)


class LineItemCatalog:
    """Scheduled values for one contract, indexed by line item id."""

    def __init__(
        self,
        contract_id: str,
        contract_amount: float,
        line_items: Iterable[LineItem]
    ):
        self.contract_id = contract_id
        self.contract_amount = to_decimal(contract_amount)
        self._items: Dict[str, LineItem] = {}

        for item in line_items:
            validate_non_negative(item.scheduled_value, f"line_items[{item.id}].scheduled_value")
            self._items[item.id] = item

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, line_item_id: str) -> bool:
        return line_item_id in self._items

    def __iter__(self):
        return iter(self._items.values())

    def get(self, line_item_id: str) -> LineItem:
        """Look up a line item. Raises UnknownLineItemError if absent."""
        item = self._items.get(line_item_id)
        if item is None:
            raise UnknownLineItemError(line_item_id, self.contract_id)
        return item

    def line_items(self) -> List[LineItem]:
        return list(self._items.values())

    def scheduled_total(self) -> Decimal:
        return safe_add(*(item.scheduled_value for item in self._items.values()))

    def is_balanced(self, epsilon: Decimal = BALANCE_EPSILON) -> bool:
        """True when the scheduled values add up to the contract amount."""
        return amounts_match(self.scheduled_total(), self.contract_amount, epsilon)

    # =========================================================================
    # LOCKING
    # =========================================================================

    def locking_application(
        self,
        applications: Iterable[PaymentApplication]
    ) -> Optional[PaymentApplication]:
        """First application against this contract that is past draft, if any."""
        for app in applications:
            if app.contract_id == self.contract_id and app.status != ApplicationStatus.DRAFT:
                return app
        return None

    def is_locked(self, applications: Iterable[PaymentApplication]) -> bool:
        return self.locking_application(applications) is not None

    def ensure_editable(self, applications: Iterable[PaymentApplication]) -> None:
        locking = self.locking_application(applications)
        if locking is not None:
            raise CatalogLockedError(self.contract_id, locking.id)

    def with_line_item(
        self,
        line_item: LineItem,
        applications: Iterable[PaymentApplication]
    ) -> "LineItemCatalog":
        """Return a new catalog with the line item added or replaced."""
        self.ensure_editable(applications)

        items = dict(self._items)
        items[line_item.id] = line_item

        logger.info(f"[CATALOG] Contract {self.contract_id}: line item {line_item.id} updated")
        return LineItemCatalog(self.contract_id, self.contract_amount, items.values())

    def without_line_item(
        self,
        line_item_id: str,
        applications: Iterable[PaymentApplication]
    ) -> "LineItemCatalog":
        self.ensure_editable(applications)
        self.get(line_item_id)

        items = {k: v for k, v in self._items.items() if k != line_item_id}
        return LineItemCatalog(self.contract_id, self.contract_amount, items.values())

    def __repr__(self):
        return f"LineItemCatalog({self.contract_id}, items={len(self._items)})"
