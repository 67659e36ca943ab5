"""
PAYMENT APPLICATION APPROVAL WORKFLOW

Wires the generic StateMachine for payment applications and adds the
baseline freeze that approval and recall carry with them.

States:
    draft --submit--> submitted --flag_for_review--> needs_review
    submitted | needs_review | rejected --approve--> approved
    submitted | needs_review --reject--> rejected
    rejected --resubmit--> submitted
    approved --recall--> needs_review
    approved --mark_check_ready--> check_ready

Every method here is pure: it returns a new PaymentApplication (and a new
BaselineLedger where baselines move) and leaves its inputs untouched.
Persisting an outcome atomically is PaymentApplicationService's job.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from models import (
    ApplicationStatus, BaselineFreeze, LineItemProgress, LineItemSubmission,
    PaymentApplication, StatusHistoryEntry, utcnow
)
from core.billing_errors import (
    ApplicationLockedError, DuplicateLineItemProgressError, EmptySubmissionError,
    MissingRejectionReasonError, UnknownLineItemError
)
from core.baseline_ledger import BaselineLedger
from core.financial_precision import to_decimal, validate_non_negative, validate_percent
from core.line_item_catalog import LineItemCatalog
from core.state_machine import StateMachine, StateMachineError

logger = logging.getLogger(__name__)

ENTITY_NAME = "payment_application"

# Roles allowed to force-delete an application that has left draft
DELETE_OVERRIDE_ROLES = {"Admin"}

# Contractor-facing events emitted after a committed transition
NOTIFY_EVENTS = {
    "approve": "approved",
    "reject": "rejected",
    "recall": "recalled",
}


class DeleteNotAllowedError(StateMachineError):
    """Raised when deleting a non-draft application without an authorized force."""

    kind = "DELETE_NOT_ALLOWED"

    def __init__(self, application_id: str, from_state: str, role: Optional[str]):
        self.application_id = application_id
        self.from_state = from_state
        super().__init__(
            f"Payment application {application_id} is '{from_state}'; only a forced delete "
            f"by {sorted(DELETE_OVERRIDE_ROLES)} may remove it",
            {"application_id": application_id, "from_state": from_state,
             "action": "delete", "role": role}
        )


class TransitionOutcome:
    """Result of one pure transition."""

    def __init__(
        self,
        application: PaymentApplication,
        result: Dict[str, Any],
        expected_status: str,
        expected_version: int,
        ledger: Optional[BaselineLedger] = None,
        baseline_freeze: Optional[BaselineFreeze] = None,
        revoked_freeze: Optional[BaselineFreeze] = None
    ):
        self.application = application
        self.result = result
        self.expected_status = expected_status
        self.expected_version = expected_version
        self.ledger = ledger
        self.baseline_freeze = baseline_freeze
        self.revoked_freeze = revoked_freeze

    @property
    def action(self) -> str:
        return self.result["action"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "application_id": self.application.id,
            "action": self.result["action"],
            "from_state": self.result["from_state"],
            "to_state": self.result["to_state"],
            "transitioned_at": self.result["transitioned_at"].isoformat()
        }


class DeletionPlan:
    """What a delete removes. Baseline freezes are never part of it."""

    def __init__(
        self,
        application: PaymentApplication,
        forced: bool,
        actor_id: Optional[str],
        orphaned_freeze: Optional[BaselineFreeze] = None
    ):
        self.application = application
        self.forced = forced
        self.actor_id = actor_id
        self.line_item_ids = [p.line_item_id for p in application.line_items]
        self.orphaned_freeze = orphaned_freeze

    @property
    def requires_audit(self) -> bool:
        return self.application.status != ApplicationStatus.DRAFT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success",
            "application_id": self.application.id,
            "action": "delete",
            "from_state": self.application.status,
            "forced": self.forced,
            "line_items_removed": len(self.line_item_ids),
            "baseline_retained": self.orphaned_freeze is not None
        }


# =============================================================================
# GUARDS
# =============================================================================

def validate_line_values(app: PaymentApplication) -> None:
    """Reject out-of-range percents and negative material on any line."""
    for progress in app.line_items:
        prefix = f"line_items[{progress.line_item_id}]"
        validate_percent(progress.submitted_percent, f"{prefix}.submitted_percent")
        validate_percent(progress.pm_verified_percent, f"{prefix}.pm_verified_percent")
        validate_percent(progress.previous_percent, f"{prefix}.previous_percent")
        validate_non_negative(progress.material_stored, f"{prefix}.material_stored")


def has_reported_progress(app: PaymentApplication) -> bool:
    for progress in app.line_items:
        if to_decimal(progress.submitted_percent) > to_decimal(progress.previous_percent):
            return True
        if to_decimal(progress.material_stored) > 0:
            return True
    return False


def guard_has_progress(app: PaymentApplication, context: Dict) -> Tuple[bool, str]:
    validate_line_values(app)
    if not has_reported_progress(app):
        raise EmptySubmissionError(app.id, app.status)
    return (True, "")


def guard_can_approve(app: PaymentApplication, context: Dict) -> Tuple[bool, str]:
    if not app.line_items:
        return (False, "Payment application has no line items")
    validate_line_values(app)
    return (True, "")


def guard_has_reason(app: PaymentApplication, context: Dict) -> Tuple[bool, str]:
    reason = context.get("reason")
    if not reason or not reason.strip():
        raise MissingRejectionReasonError(app.id, app.status)
    return (True, "")


def guard_freeze_revocable(app: PaymentApplication, context: Dict) -> Tuple[bool, str]:
    ledger = context.get("ledger")
    if ledger is None:
        return (False, "Baseline ledger is required to recall an approval")
    ledger.check_revocable(app.id)
    return (True, "")


# =============================================================================
# HANDLERS
# =============================================================================

def _actor_id(context: Dict) -> Optional[str]:
    actor = context.get("actor") or {}
    return actor.get("user_id")


def handle_submit(app: PaymentApplication, context: Dict) -> Dict:
    return {"submitted_at": context["now"]}


def handle_flag_for_review(app: PaymentApplication, context: Dict) -> Dict:
    return {}


def handle_approve(app: PaymentApplication, context: Dict) -> Dict:
    return {
        "approved_at": context["now"],
        "approved_by": _actor_id(context),
        "approval_notes": context.get("notes")
    }


def handle_reject(app: PaymentApplication, context: Dict) -> Dict:
    return {
        "rejection_reason": context["reason"].strip(),
        "rejected_at": context["now"],
        "rejected_by": _actor_id(context)
    }


def handle_recall(app: PaymentApplication, context: Dict) -> Dict:
    return {
        "recall_reason": context.get("reason"),
        "recalled_at": context["now"],
        "approved_at": None,
        "approved_by": None
    }


def handle_mark_check_ready(app: PaymentApplication, context: Dict) -> Dict:
    return {"check_ready_at": context["now"]}


def create_payment_application_state_machine() -> StateMachine:
    machine = StateMachine(ENTITY_NAME, status_field="status")
    S = ApplicationStatus

    machine.register(S.DRAFT, "submit", S.SUBMITTED, handle_submit,
                     guard=guard_has_progress, description="Contractor submits progress")
    machine.register(S.SUBMITTED, "flag_for_review", S.NEEDS_REVIEW, handle_flag_for_review,
                     description="Reviewer takes the application into review")

    for source in (S.SUBMITTED, S.NEEDS_REVIEW, S.REJECTED):
        machine.register(source, "approve", S.APPROVED, handle_approve,
                         guard=guard_can_approve, description="Approve and freeze baselines")

    for source in (S.SUBMITTED, S.NEEDS_REVIEW):
        machine.register(source, "reject", S.REJECTED, handle_reject,
                         guard=guard_has_reason, description="Reject with a reason")

    machine.register(S.REJECTED, "resubmit", S.SUBMITTED, handle_submit,
                     guard=guard_has_progress, description="Contractor resubmits after rejection")
    machine.register(S.APPROVED, "recall", S.NEEDS_REVIEW, handle_recall,
                     guard=guard_freeze_revocable, description="Reopen an approval for review")
    machine.register(S.APPROVED, "mark_check_ready", S.CHECK_READY, handle_mark_check_ready,
                     description="Payment released to check run")

    return machine


# =============================================================================
# WORKFLOW
# =============================================================================

class PaymentApplicationWorkflow:
    """
    Pure lifecycle operations for payment applications.

    `notifier` is any object with notify(event, application); it runs from
    after_commit() once the caller has persisted the outcome.
    """

    def __init__(self, notifier=None):
        self.notifier = notifier
        self.machine = create_payment_application_state_machine()
        if notifier is not None:
            self.machine.on_post_transition(self._notify_contractor)

    # -------------------------------------------------------------------------
    # CREATION & LINE EDITS
    # -------------------------------------------------------------------------

    def open_application(
        self,
        application_id: str,
        catalog: LineItemCatalog,
        ledger: BaselineLedger,
        submissions: Iterable[LineItemSubmission],
        project_id: str,
        contractor_id: str,
        notes: Optional[str] = None,
        actor: Optional[Dict] = None,
        now: Optional[datetime] = None
    ) -> PaymentApplication:
        """Create a draft, snapshotting previous_percent from the ledger."""
        now = now or utcnow()
        line_items: List[LineItemProgress] = []
        seen = set()

        for submission in submissions:
            catalog.get(submission.line_item_id)
            if submission.line_item_id in seen:
                raise DuplicateLineItemProgressError(submission.line_item_id, application_id)
            seen.add(submission.line_item_id)

            prefix = f"line_items[{submission.line_item_id}]"
            validate_percent(submission.submitted_percent, f"{prefix}.submitted_percent")
            validate_non_negative(submission.material_stored, f"{prefix}.material_stored")

            line_items.append(LineItemProgress(
                line_item_id=submission.line_item_id,
                submitted_percent=submission.submitted_percent,
                previous_percent=ledger.previous_percent(submission.line_item_id),
                material_stored=submission.material_stored
            ))

        app = PaymentApplication(
            id=application_id,
            contract_id=catalog.contract_id,
            project_id=project_id,
            contractor_id=contractor_id,
            status=ApplicationStatus.DRAFT,
            line_items=line_items,
            notes=notes,
            created_at=now,
            status_history=[StatusHistoryEntry(
                action="create",
                to_state=ApplicationStatus.DRAFT,
                at=now,
                by=(actor or {}).get("user_id")
            )]
        )

        logger.info(
            f"[BILLING] Opened application {application_id} on contract "
            f"{catalog.contract_id} with {len(line_items)} line(s)"
        )
        return app

    def record_submission(
        self,
        app: PaymentApplication,
        line_item_id: str,
        submitted_percent: float,
        material_stored: float = 0.0
    ) -> PaymentApplication:
        """Contractor changes a reported value. Resets the reviewer's figure."""
        if app.status not in (ApplicationStatus.DRAFT, ApplicationStatus.REJECTED):
            raise ApplicationLockedError(app.id, app.status, "record_submission")

        validate_percent(submitted_percent, "submitted_percent")
        validate_non_negative(material_stored, "material_stored")

        return self._replace_line(app, line_item_id, {
            "submitted_percent": submitted_percent,
            "pm_verified_percent": submitted_percent,
            "material_stored": material_stored,
            "pm_adjustment_reason": None
        })

    def verify_line_item(
        self,
        app: PaymentApplication,
        line_item_id: str,
        pm_verified_percent: float,
        adjustment_reason: Optional[str] = None
    ) -> PaymentApplication:
        """Reviewer overrides the verified percent for one line."""
        if app.status not in ApplicationStatus.EDITABLE:
            raise ApplicationLockedError(app.id, app.status, "verify_line_item")

        verified = validate_percent(pm_verified_percent, "pm_verified_percent")
        progress = app.progress_for(line_item_id)
        if progress is not None and verified < to_decimal(progress.previous_percent):
            logger.warning(
                f"[BILLING] Application {app.id}, line {line_item_id}: verified "
                f"{pm_verified_percent}% is below previous {progress.previous_percent}%"
            )

        return self._replace_line(app, line_item_id, {
            "pm_verified_percent": pm_verified_percent,
            "pm_adjustment_reason": adjustment_reason
        })

    def rebase_application(
        self,
        app: PaymentApplication,
        ledger: BaselineLedger
    ) -> PaymentApplication:
        """Re-derive previous_percent for an open application from the ledger."""
        if app.status not in ApplicationStatus.EDITABLE:
            raise ApplicationLockedError(app.id, app.status, "rebase")

        line_items = [
            progress.model_copy(update={
                "previous_percent": ledger.previous_percent(progress.line_item_id)
            })
            for progress in app.line_items
        ]
        return app.model_copy(update={
            "line_items": line_items,
            "updated_at": utcnow(),
            "version": app.version + 1
        })

    def _replace_line(
        self,
        app: PaymentApplication,
        line_item_id: str,
        updates: Dict[str, Any]
    ) -> PaymentApplication:
        if app.progress_for(line_item_id) is None:
            raise UnknownLineItemError(line_item_id, app.contract_id)

        line_items = [
            progress.model_copy(update=updates) if progress.line_item_id == line_item_id
            else progress
            for progress in app.line_items
        ]
        return app.model_copy(update={
            "line_items": line_items,
            "updated_at": utcnow(),
            "version": app.version + 1
        })

    # -------------------------------------------------------------------------
    # TRANSITIONS
    # -------------------------------------------------------------------------

    def submit(self, app: PaymentApplication, actor: Optional[Dict] = None) -> TransitionOutcome:
        return self._apply(app, "submit", {"actor": actor})

    def flag_for_review(
        self,
        app: PaymentApplication,
        actor: Optional[Dict] = None,
        notes: Optional[str] = None
    ) -> TransitionOutcome:
        return self._apply(app, "flag_for_review", {"actor": actor, "notes": notes})

    def approve(
        self,
        app: PaymentApplication,
        ledger: BaselineLedger,
        notes: Optional[str] = None,
        actor: Optional[Dict] = None
    ) -> TransitionOutcome:
        """Approve and freeze every line's billed-to-date percent in one record."""
        outcome = self._apply(app, "approve", {"actor": actor, "notes": notes})

        freeze = ledger.build_freeze(
            outcome.application,
            frozen_by=_actor_id({"actor": actor}),
            frozen_at=outcome.application.approved_at
        )
        outcome.baseline_freeze = freeze
        outcome.ledger = ledger.with_freeze(freeze)
        return outcome

    def reject(
        self,
        app: PaymentApplication,
        reason: Optional[str],
        actor: Optional[Dict] = None
    ) -> TransitionOutcome:
        return self._apply(app, "reject", {"actor": actor, "reason": reason, "notes": reason})

    def recall(
        self,
        app: PaymentApplication,
        ledger: BaselineLedger,
        reason: Optional[str] = None,
        actor: Optional[Dict] = None
    ) -> TransitionOutcome:
        """Reopen an approval and revoke the baselines it froze."""
        outcome = self._apply(app, "recall", {
            "actor": actor, "reason": reason, "notes": reason, "ledger": ledger
        })
        outcome.revoked_freeze = ledger.find(app.id)
        outcome.ledger = ledger.revoke(app.id)
        return outcome

    def mark_check_ready(self, app: PaymentApplication, actor: Optional[Dict] = None) -> TransitionOutcome:
        return self._apply(app, "mark_check_ready", {"actor": actor})

    def resubmit(self, app: PaymentApplication, actor: Optional[Dict] = None) -> TransitionOutcome:
        return self._apply(app, "resubmit", {"actor": actor})

    def delete(
        self,
        app: PaymentApplication,
        force: bool = False,
        actor: Optional[Dict] = None,
        ledger: Optional[BaselineLedger] = None
    ) -> DeletionPlan:
        """
        Plan a delete. Drafts go freely; anything else needs force from an
        override role. Baseline freezes stay where they are.
        """
        actor = actor or {}
        role = actor.get("role")

        if app.status != ApplicationStatus.DRAFT:
            if not force or role not in DELETE_OVERRIDE_ROLES:
                raise DeleteNotAllowedError(app.id, app.status, role)

        orphaned = ledger.find(app.id) if ledger is not None else None
        if orphaned is not None:
            logger.warning(
                f"[BILLING] Application {app.id} deleted while its baseline freeze "
                f"(sequence {orphaned.sequence}) remains in force"
            )

        return DeletionPlan(app, forced=force, actor_id=actor.get("user_id"), orphaned_freeze=orphaned)

    def _apply(self, app: PaymentApplication, action: str, context: Dict) -> TransitionOutcome:
        context.setdefault("now", utcnow())
        result = self.machine.transition(app, action, context)

        entry = StatusHistoryEntry(
            action=action,
            from_state=result["from_state"],
            to_state=result["to_state"],
            at=context["now"],
            by=_actor_id(context),
            notes=context.get("notes")
        )
        updates = dict(result["changes"])
        updates.update({
            "status_history": list(app.status_history) + [entry],
            "updated_at": context["now"],
            "version": app.version + 1
        })

        return TransitionOutcome(
            application=app.model_copy(update=updates),
            result=result,
            expected_status=app.status,
            expected_version=app.version
        )

    # -------------------------------------------------------------------------
    # SIDE EFFECTS
    # -------------------------------------------------------------------------

    def allowed_actions(self, app: PaymentApplication) -> List[str]:
        return self.machine.get_allowed_actions(app.status)

    def describe(self) -> Dict[str, Any]:
        """States and transitions, for clients that render the workflow."""
        return {
            "entity": ENTITY_NAME,
            "states": self.machine.get_states(),
            "transitions": self.machine.get_transitions(),
            "graph": self.machine.get_graph()
        }

    def after_commit(self, outcome: TransitionOutcome) -> None:
        """Run post-transition callbacks once the outcome is persisted."""
        self.machine.run_post_callbacks(outcome.application, outcome.result)

    def _notify_contractor(self, app: PaymentApplication, result: Dict[str, Any]) -> None:
        event = NOTIFY_EVENTS.get(result["action"])
        if event is not None:
            self.notifier.notify(event, app)
