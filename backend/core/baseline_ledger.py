"""
BASELINE LEDGER

The "previous percent" for a line item is the percent frozen by the most
recent approved payment application that billed it: its pm_verified_percent,
or the earlier baseline when it was verified lower. Each approval writes one
BaselineFreeze covering all of that application's lines; a recall revokes the
freeze, so the baseline falls back to the prior approved application.

The ledger is immutable: freeze() and revoke() return new ledgers.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging

from models import BaselineFreeze, PaymentApplication, utcnow
from core.billing_errors import BaselineConflictError
from core.financial_precision import validate_percent

logger = logging.getLogger(__name__)


class BaselineLedger:
    """Approval freezes for one contract, ordered by sequence."""

    def __init__(self, contract_id: str, freezes: Iterable[BaselineFreeze] = ()):
        self.contract_id = contract_id
        self._freezes: List[BaselineFreeze] = sorted(freezes, key=lambda f: f.sequence)

        for freeze in self._freezes:
            if freeze.contract_id != contract_id:
                raise BaselineConflictError(
                    f"Freeze for application {freeze.application_id} belongs to contract "
                    f"{freeze.contract_id}, not {contract_id}",
                    {"application_id": freeze.application_id, "contract_id": contract_id}
                )

    @property
    def freezes(self) -> List[BaselineFreeze]:
        return list(self._freezes)

    def __len__(self) -> int:
        return len(self._freezes)

    def next_sequence(self) -> int:
        return self._freezes[-1].sequence + 1 if self._freezes else 1

    def find(self, application_id: str) -> Optional[BaselineFreeze]:
        for freeze in self._freezes:
            if freeze.application_id == application_id:
                return freeze
        return None

    # =========================================================================
    # BASELINES
    # =========================================================================

    def previous_percent(self, line_item_id: str) -> float:
        """Latest frozen percent for the line item, or 0 if never approved."""
        for freeze in reversed(self._freezes):
            if line_item_id in freeze.percents:
                return freeze.percents[line_item_id]
        return 0.0

    def baselines(self) -> Dict[str, float]:
        result: Dict[str, float] = {}
        for freeze in self._freezes:
            result.update(freeze.percents)
        return result

    # =========================================================================
    # FREEZE / REVOKE
    # =========================================================================

    def build_freeze(
        self,
        application: PaymentApplication,
        frozen_by: Optional[str] = None,
        frozen_at: Optional[datetime] = None
    ) -> BaselineFreeze:
        """
        Capture every line's billed-to-date percent in one freeze record.

        A line verified below its previous percent was paid nothing this period,
        so the freeze keeps the previous percent. Baselines never move down.
        """
        if application.contract_id != self.contract_id:
            raise BaselineConflictError(
                f"Application {application.id} is for contract {application.contract_id}, "
                f"ledger is for {self.contract_id}",
                {"application_id": application.id, "contract_id": self.contract_id}
            )
        if self.find(application.id) is not None:
            raise BaselineConflictError(
                f"Application {application.id} already has a baseline freeze",
                {"application_id": application.id}
            )

        percents = {}
        for progress in application.line_items:
            verified = validate_percent(
                progress.pm_verified_percent, f"{progress.line_item_id}.pm_verified_percent"
            )
            previous = validate_percent(
                progress.previous_percent, f"{progress.line_item_id}.previous_percent"
            )
            if verified < previous:
                logger.warning(
                    f"[BASELINE] Application {application.id}, line {progress.line_item_id}: "
                    f"verified {progress.pm_verified_percent}% is below previous "
                    f"{progress.previous_percent}%; baseline held at previous"
                )
            percents[progress.line_item_id] = float(max(verified, previous))

        return BaselineFreeze(
            application_id=application.id,
            contract_id=self.contract_id,
            sequence=self.next_sequence(),
            percents=percents,
            frozen_at=frozen_at or utcnow(),
            frozen_by=frozen_by
        )

    def with_freeze(self, freeze: BaselineFreeze) -> "BaselineLedger":
        if self.find(freeze.application_id) is not None:
            raise BaselineConflictError(
                f"Application {freeze.application_id} already has a baseline freeze",
                {"application_id": freeze.application_id}
            )
        logger.info(
            f"[BASELINE] Contract {self.contract_id}: froze {len(freeze.percents)} "
            f"line(s) from application {freeze.application_id}"
        )
        return BaselineLedger(self.contract_id, self._freezes + [freeze])

    def check_revocable(self, application_id: str) -> BaselineFreeze:
        """
        A freeze can only be revoked while no later freeze has built on any of
        its line items.
        """
        freeze = self.find(application_id)
        if freeze is None:
            raise BaselineConflictError(
                f"No baseline freeze recorded for application {application_id}",
                {"application_id": application_id}
            )

        later = [f for f in self._freezes if f.sequence > freeze.sequence]
        for other in later:
            overlap = sorted(set(other.percents) & set(freeze.percents))
            if overlap:
                raise BaselineConflictError(
                    f"Application {application_id} cannot be recalled: application "
                    f"{other.application_id} was approved on top of its baselines",
                    {
                        "application_id": application_id,
                        "blocking_application_id": other.application_id,
                        "line_item_ids": overlap
                    }
                )
        return freeze

    def revoke(self, application_id: str) -> "BaselineLedger":
        freeze = self.check_revocable(application_id)
        logger.info(
            f"[BASELINE] Contract {self.contract_id}: revoked freeze from application "
            f"{application_id}"
        )
        return BaselineLedger(
            self.contract_id,
            [f for f in self._freezes if f.application_id != freeze.application_id]
        )

    def __repr__(self):
        return f"BaselineLedger({self.contract_id}, freezes={len(self._freezes)})"
