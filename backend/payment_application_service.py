"""
PAYMENT APPLICATION SERVICE

Loads payment applications, catalogs and baseline freezes from MongoDB,
validates them into models, runs the pure engine, and persists the outcome.

Every status change happens inside one transaction:
- the header update is a single find_one_and_update filtered on the status and
  version that were read, so two reviewers cannot both act on the same state
- an approval's baseline freeze is one document inserted in the same session
- the audit entry commits or rolls back with the change
- billing_baselines carries a unique (contract_id, sequence) index, so two
  approvals racing on one contract cannot both take the next baseline slot

Collections:
    contracts, line_items, payment_applications, payment_line_item_progress,
    billing_baselines, billing_audit_logs
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId
from pymongo.errors import DuplicateKeyError
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

from models import (
    ApplicationStatus, BaselineFreeze, ChangeOrderCreate, Contract, LineItem,
    LineItemProgress, LineItemSubmissionUpdate, LineItemUpsert, LineItemVerify,
    PaymentApplication, PaymentApplicationCreate
)
from audit_service import AuditService, ENTITY_LINE_ITEM_CATALOG
from core.billing_errors import BillingEngineError, ConcurrentModificationError
from core.baseline_ledger import BaselineLedger
from core.line_item_catalog import LineItemCatalog
from core.payment_aggregator import aggregate
from core.financial_precision import to_float
from core.approval_workflow import PaymentApplicationWorkflow, TransitionOutcome
from core import change_order_ledger

logger = logging.getLogger(__name__)


class ApplicationNotFoundError(BillingEngineError):
    kind = "APPLICATION_NOT_FOUND"

    def __init__(self, application_id: str):
        super().__init__(f"Payment application {application_id} not found",
                         {"application_id": application_id})


class ContractNotFoundError(BillingEngineError):
    kind = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str):
        super().__init__(f"Contract {contract_id} not found", {"contract_id": contract_id})


class LoggingNotifier:
    """Default contractor notifier. Delivery (SMS, email) lives elsewhere."""

    def notify(self, event: str, application: PaymentApplication) -> None:
        logger.info(
            f"[NOTIFY] Contractor {application.contractor_id}: payment application "
            f"{application.id} {event}"
        )


def _application_header(app: PaymentApplication) -> Dict[str, Any]:
    return app.model_dump(exclude={"id", "line_items"})


def _progress_doc(app_id: str, position: int, progress: LineItemProgress) -> Dict[str, Any]:
    doc = progress.model_dump()
    doc.update({
        "_id": f"{app_id}:{progress.line_item_id}",
        "payment_app_id": app_id,
        "position": position
    })
    return doc


class PaymentApplicationService:
    """Apply-and-persist wrapper around the billing engine."""

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit_service: Optional[AuditService] = None,
        notifier=None
    ):
        self.client = client
        self.db = db
        self.audit_service = audit_service or AuditService(db)
        self.workflow = PaymentApplicationWorkflow(notifier or LoggingNotifier())

    async def _run_in_transaction(self, operation: Callable[[Any], Awaitable[Any]]):
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                return await operation(session)

    async def create_indexes(self):
        """Create the indexes the billing collections rely on. Run once at startup."""
        await self.db.billing_baselines.create_index(
            [("contract_id", 1), ("sequence", 1)],
            unique=True,
            name="unique_contract_baseline_sequence"
        )
        await self.db.payment_line_item_progress.create_index([("payment_app_id", 1), ("position", 1)])
        await self.db.billing_audit_logs.create_index([("entity_id", 1), ("timestamp", -1)])
        logger.info("[BILLING] Billing indexes created")

    # =========================================================================
    # LOADERS (persistence boundary: raw documents -> models)
    # =========================================================================

    async def load_contract(self, contract_id: str, session=None) -> Contract:
        doc = await self.db.contracts.find_one({"_id": contract_id}, session=session)
        if not doc:
            raise ContractNotFoundError(contract_id)
        return Contract(id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})

    async def load_catalog(self, contract_id: str, session=None) -> LineItemCatalog:
        contract = await self.load_contract(contract_id, session=session)
        docs = await self.db.line_items.find(
            {"contract_id": contract_id}, session=session
        ).to_list(length=None)

        items = [
            LineItem(id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})
            for doc in docs
        ]
        return LineItemCatalog(contract_id, contract.contract_amount, items)

    async def load_ledger(self, contract_id: str, session=None) -> BaselineLedger:
        docs = await self.db.billing_baselines.find(
            {"contract_id": contract_id}, session=session
        ).to_list(length=None)

        freezes = [BaselineFreeze(**{k: v for k, v in doc.items() if k != "_id"}) for doc in docs]
        return BaselineLedger(contract_id, freezes)

    async def load_application(self, application_id: str, session=None) -> PaymentApplication:
        doc = await self.db.payment_applications.find_one({"_id": application_id}, session=session)
        if not doc:
            raise ApplicationNotFoundError(application_id)

        progress_docs = await self.db.payment_line_item_progress.find(
            {"payment_app_id": application_id}, session=session
        ).sort("position", 1).to_list(length=None)

        header = {k: v for k, v in doc.items() if k != "_id"}
        line_items = [
            LineItemProgress(**{
                k: v for k, v in p.items() if k not in ("_id", "payment_app_id", "position")
            })
            for p in progress_docs
        ]
        return PaymentApplication(id=str(doc["_id"]), line_items=line_items, **header)

    async def load_project_id(self, application_id: str) -> str:
        """Project of an application, read before any access-checked work."""
        doc = await self.db.payment_applications.find_one(
            {"_id": application_id}, {"project_id": 1}
        )
        if not doc:
            raise ApplicationNotFoundError(application_id)
        return doc["project_id"]

    async def _contract_applications(self, contract_id: str, session=None) -> List[PaymentApplication]:
        """Application headers on the contract, without their progress rows."""
        docs = await self.db.payment_applications.find(
            {"contract_id": contract_id}, session=session
        ).to_list(length=None)
        return [
            PaymentApplication(id=str(doc["_id"]), **{k: v for k, v in doc.items() if k != "_id"})
            for doc in docs
        ]

    async def list_applications(
        self,
        project_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if project_id:
            query["project_id"] = project_id
        if contract_id:
            query["contract_id"] = contract_id
        if status:
            query["status"] = status

        docs = await self.db.payment_applications.find(query).sort("created_at", -1).limit(limit).to_list(length=limit)
        for doc in docs:
            doc["id"] = str(doc.pop("_id"))
        return docs

    # =========================================================================
    # WRITERS
    # =========================================================================

    async def _save_header(
        self,
        app: PaymentApplication,
        expected_status: str,
        expected_version: int,
        session
    ) -> None:
        """Check-then-act in one round trip: no match means someone else won."""
        previous = await self.db.payment_applications.find_one_and_update(
            {"_id": app.id, "status": expected_status, "version": expected_version},
            {"$set": _application_header(app)},
            session=session
        )
        if previous is None:
            raise ConcurrentModificationError(app.id, expected_status, expected_version)

    async def _save_line_items(self, app: PaymentApplication, line_item_ids, session) -> None:
        for position, progress in enumerate(app.line_items):
            if progress.line_item_id not in line_item_ids:
                continue
            doc = _progress_doc(app.id, position, progress)
            await self.db.payment_line_item_progress.update_one(
                {"_id": doc["_id"]},
                {"$set": {k: v for k, v in doc.items() if k != "_id"}},
                session=session
            )

    async def _rebase_open_applications(
        self,
        contract_id: str,
        ledger: BaselineLedger,
        exclude_id: str,
        session
    ) -> List[str]:
        """Re-derive previous_percent on every open application of the contract."""
        docs = await self.db.payment_applications.find(
            {"contract_id": contract_id, "status": {"$in": list(ApplicationStatus.EDITABLE)}},
            session=session
        ).to_list(length=None)

        rebased = []
        for doc in docs:
            app_id = str(doc["_id"])
            if app_id == exclude_id:
                continue
            app = await self.load_application(app_id, session=session)
            updated = self.workflow.rebase_application(app, ledger)
            await self._save_header(updated, app.status, app.version, session)
            await self._save_line_items(updated, {p.line_item_id for p in updated.line_items}, session)
            rebased.append(app_id)

        if rebased:
            logger.info(f"[BILLING] Contract {contract_id}: rebased open applications {rebased}")
        return rebased

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def create_application(
        self,
        contract_id: str,
        payload: PaymentApplicationCreate,
        actor: Dict[str, Any]
    ) -> PaymentApplication:
        async def run(session):
            contract = await self.load_contract(contract_id, session=session)
            catalog = await self.load_catalog(contract_id, session=session)
            ledger = await self.load_ledger(contract_id, session=session)

            app = self.workflow.open_application(
                application_id=str(ObjectId()),
                catalog=catalog,
                ledger=ledger,
                submissions=payload.line_items,
                project_id=contract.project_id,
                contractor_id=contract.contractor_id,
                notes=payload.notes,
                actor=actor
            )

            header = _application_header(app)
            header["_id"] = app.id
            await self.db.payment_applications.insert_one(header, session=session)
            for position, progress in enumerate(app.line_items):
                await self.db.payment_line_item_progress.insert_one(
                    _progress_doc(app.id, position, progress), session=session
                )

            await self.audit_service.log_action(
                entity_id=app.id,
                action="create",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                to_state=app.status,
                session=session
            )
            return app

        return await self._run_in_transaction(run)

    async def get_application_summary(self, application_id: str) -> Dict[str, Any]:
        app = await self.load_application(application_id)
        catalog = await self.load_catalog(app.contract_id)
        applications = await self._contract_applications(app.contract_id)

        return {
            "application": app.model_dump(mode="json"),
            "aggregate": aggregate(app, catalog).to_display(),
            "change_orders": change_order_ledger.export_change_orders(app),
            "allowed_actions": self.workflow.allowed_actions(app),
            "catalog_locked": catalog.is_locked(applications)
        }

    # =========================================================================
    # LINE ITEM EDITS
    # =========================================================================

    async def verify_line_item(
        self,
        application_id: str,
        line_item_id: str,
        payload: LineItemVerify,
        actor: Dict[str, Any]
    ) -> PaymentApplication:
        async def run(session):
            app = await self.load_application(application_id, session=session)
            updated = self.workflow.verify_line_item(
                app, line_item_id, payload.pm_verified_percent, payload.pm_adjustment_reason
            )
            await self._save_header(updated, app.status, app.version, session)
            await self._save_line_items(updated, {line_item_id}, session)
            await self.audit_service.log_action(
                entity_id=app.id,
                action="verify_line_item",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                notes=payload.pm_adjustment_reason,
                details={"line_item_id": line_item_id,
                         "pm_verified_percent": payload.pm_verified_percent},
                session=session
            )
            return updated

        return await self._run_in_transaction(run)

    async def record_submission(
        self,
        application_id: str,
        line_item_id: str,
        payload: LineItemSubmissionUpdate,
        actor: Dict[str, Any]
    ) -> PaymentApplication:
        """Contractor revises one line of a draft or rejected application."""
        async def run(session):
            app = await self.load_application(application_id, session=session)
            updated = self.workflow.record_submission(
                app, line_item_id, payload.submitted_percent, payload.material_stored
            )
            await self._save_header(updated, app.status, app.version, session)
            await self._save_line_items(updated, {line_item_id}, session)
            await self.audit_service.log_action(
                entity_id=app.id,
                action="record_submission",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                details={"line_item_id": line_item_id,
                         "submitted_percent": payload.submitted_percent,
                         "material_stored": payload.material_stored},
                session=session
            )
            return updated

        return await self._run_in_transaction(run)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def _transition(
        self,
        application_id: str,
        actor: Dict[str, Any],
        step: Callable[[PaymentApplication, BaselineLedger], TransitionOutcome]
    ) -> TransitionOutcome:
        async def run(session):
            app = await self.load_application(application_id, session=session)
            ledger = await self.load_ledger(app.contract_id, session=session)

            outcome = step(app, ledger)
            await self._save_header(
                outcome.application, outcome.expected_status, outcome.expected_version, session
            )

            if outcome.baseline_freeze is not None:
                freeze_doc = outcome.baseline_freeze.model_dump()
                freeze_doc["_id"] = outcome.baseline_freeze.application_id
                try:
                    await self.db.billing_baselines.insert_one(freeze_doc, session=session)
                except DuplicateKeyError:
                    # another approval on the contract took this sequence first
                    raise ConcurrentModificationError(
                        app.id, outcome.expected_status, outcome.expected_version
                    )

            if outcome.revoked_freeze is not None:
                await self.db.billing_baselines.delete_one(
                    {"_id": outcome.revoked_freeze.application_id}, session=session
                )

            if outcome.ledger is not None:
                await self._rebase_open_applications(
                    app.contract_id, outcome.ledger, app.id, session
                )

            await self.audit_service.log_action(
                entity_id=app.id,
                action=outcome.action,
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                from_state=outcome.result["from_state"],
                to_state=outcome.result["to_state"],
                notes=outcome.application.status_history[-1].notes,
                session=session
            )
            return outcome

        outcome = await self._run_in_transaction(run)
        self.workflow.after_commit(outcome)
        return outcome

    async def submit(self, application_id: str, actor: Dict[str, Any]) -> TransitionOutcome:
        return await self._transition(
            application_id, actor, lambda app, ledger: self.workflow.submit(app, actor)
        )

    async def flag_for_review(
        self, application_id: str, actor: Dict[str, Any], notes: Optional[str] = None
    ) -> TransitionOutcome:
        return await self._transition(
            application_id, actor,
            lambda app, ledger: self.workflow.flag_for_review(app, actor, notes)
        )

    async def approve(
        self, application_id: str, actor: Dict[str, Any], notes: Optional[str] = None
    ) -> TransitionOutcome:
        return await self._transition(
            application_id, actor,
            lambda app, ledger: self.workflow.approve(app, ledger, notes, actor)
        )

    async def reject(
        self, application_id: str, actor: Dict[str, Any], reason: Optional[str]
    ) -> TransitionOutcome:
        return await self._transition(
            application_id, actor, lambda app, ledger: self.workflow.reject(app, reason, actor)
        )

    async def recall(
        self, application_id: str, actor: Dict[str, Any], reason: Optional[str] = None
    ) -> TransitionOutcome:
        return await self._transition(
            application_id, actor,
            lambda app, ledger: self.workflow.recall(app, ledger, reason, actor)
        )

    async def mark_check_ready(self, application_id: str, actor: Dict[str, Any]) -> TransitionOutcome:
        return await self._transition(
            application_id, actor, lambda app, ledger: self.workflow.mark_check_ready(app, actor)
        )

    async def resubmit(self, application_id: str, actor: Dict[str, Any]) -> TransitionOutcome:
        return await self._transition(
            application_id, actor, lambda app, ledger: self.workflow.resubmit(app, actor)
        )

    # =========================================================================
    # DELETE
    # =========================================================================

    async def delete_application(
        self,
        application_id: str,
        actor: Dict[str, Any],
        force: bool = False
    ) -> Dict[str, Any]:
        """Remove an application and its progress rows. Baselines are untouched."""
        async def run(session):
            app = await self.load_application(application_id, session=session)
            ledger = await self.load_ledger(app.contract_id, session=session)
            plan = self.workflow.delete(app, force=force, actor=actor, ledger=ledger)

            result = await self.db.payment_applications.delete_one(
                {"_id": app.id, "status": app.status, "version": app.version}, session=session
            )
            if result.deleted_count != 1:
                raise ConcurrentModificationError(app.id, app.status, app.version)

            await self.db.payment_line_item_progress.delete_many(
                {"payment_app_id": app.id}, session=session
            )

            if plan.requires_audit:
                logger.warning(
                    f"[BILLING] Forced delete of '{app.status}' application {app.id} "
                    f"by {actor.get('user_id')}"
                )

            await self.audit_service.log_action(
                entity_id=app.id,
                action="delete",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                from_state=app.status,
                details={"forced": plan.forced, "line_items_removed": len(plan.line_item_ids)},
                session=session
            )
            return plan.to_dict()

        return await self._run_in_transaction(run)

    # =========================================================================
    # CHANGE ORDERS
    # =========================================================================

    async def add_change_order(
        self,
        application_id: str,
        payload: ChangeOrderCreate,
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        async def run(session):
            app = await self.load_application(application_id, session=session)
            contract = await self.load_contract(app.contract_id, session=session)

            updated = change_order_ledger.add_change_order(
                app,
                payload.description,
                payload.amount,
                percentage=payload.percentage,
                contract_value=contract.contract_amount
            )
            await self._save_header(updated, app.status, app.version, session)
            await self.audit_service.log_action(
                entity_id=app.id,
                action="add_change_order",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                details={"change_order_id": updated.change_orders[-1].id, "amount": payload.amount},
                session=session
            )
            return change_order_ledger.export_change_orders(updated)

        return await self._run_in_transaction(run)

    async def remove_change_order(
        self,
        application_id: str,
        change_order_id: str,
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        async def run(session):
            app = await self.load_application(application_id, session=session)
            updated = change_order_ledger.remove_change_order(app, change_order_id)
            await self._save_header(updated, app.status, app.version, session)
            await self.audit_service.log_action(
                entity_id=app.id,
                action="remove_change_order",
                user_id=actor.get("user_id"),
                project_id=app.project_id,
                details={"change_order_id": change_order_id},
                session=session
            )
            return change_order_ledger.export_change_orders(updated)

        return await self._run_in_transaction(run)

    async def export_change_orders(self, application_id: str) -> Dict[str, Any]:
        app = await self.load_application(application_id)
        return change_order_ledger.export_change_orders(app)

    # =========================================================================
    # LINE ITEM CATALOG
    # =========================================================================

    def _catalog_summary(
        self,
        catalog: LineItemCatalog,
        applications: List[PaymentApplication]
    ) -> Dict[str, Any]:
        locking = catalog.locking_application(applications)
        return {
            "contract_id": catalog.contract_id,
            "line_items": [item.model_dump() for item in catalog.line_items()],
            "scheduled_total": to_float(catalog.scheduled_total()),
            "contract_amount": to_float(catalog.contract_amount),
            "is_balanced": catalog.is_balanced(),
            "locked": locking is not None,
            "locked_by_application_id": locking.id if locking is not None else None
        }

    async def get_catalog(self, contract_id: str) -> Dict[str, Any]:
        catalog = await self.load_catalog(contract_id)
        applications = await self._contract_applications(contract_id)
        return self._catalog_summary(catalog, applications)

    async def upsert_line_item(
        self,
        contract_id: str,
        line_item_id: str,
        payload: LineItemUpsert,
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Add or replace a scheduled value. Refused once any application left draft."""
        async def run(session):
            contract = await self.load_contract(contract_id, session=session)
            catalog = await self.load_catalog(contract_id, session=session)
            applications = await self._contract_applications(contract_id, session=session)

            item = LineItem(
                id=line_item_id,
                contract_id=contract_id,
                item_number=payload.item_number,
                description=payload.description,
                scheduled_value=payload.scheduled_value
            )
            updated = catalog.with_line_item(item, applications)

            doc = item.model_dump(exclude={"id"})
            if line_item_id in catalog:
                await self.db.line_items.update_one(
                    {"_id": line_item_id, "contract_id": contract_id}, {"$set": doc}, session=session
                )
            else:
                doc["_id"] = line_item_id
                await self.db.line_items.insert_one(doc, session=session)

            await self.audit_service.log_action(
                entity_id=contract_id,
                entity_type=ENTITY_LINE_ITEM_CATALOG,
                action="upsert_line_item",
                user_id=actor.get("user_id"),
                project_id=contract.project_id,
                details={"line_item_id": line_item_id, "scheduled_value": payload.scheduled_value},
                session=session
            )
            return self._catalog_summary(updated, applications)

        return await self._run_in_transaction(run)

    async def remove_line_item(
        self,
        contract_id: str,
        line_item_id: str,
        actor: Dict[str, Any]
    ) -> Dict[str, Any]:
        async def run(session):
            contract = await self.load_contract(contract_id, session=session)
            catalog = await self.load_catalog(contract_id, session=session)
            applications = await self._contract_applications(contract_id, session=session)

            updated = catalog.without_line_item(line_item_id, applications)
            await self.db.line_items.delete_one(
                {"_id": line_item_id, "contract_id": contract_id}, session=session
            )
            await self.audit_service.log_action(
                entity_id=contract_id,
                entity_type=ENTITY_LINE_ITEM_CATALOG,
                action="remove_line_item",
                user_id=actor.get("user_id"),
                project_id=contract.project_id,
                details={"line_item_id": line_item_id},
                session=session
            )
            return self._catalog_summary(updated, applications)

        return await self._run_in_transaction(run)

    # =========================================================================
    # AUDIT TRAIL
    # =========================================================================

    async def get_audit_trail(self, application_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Audit entries for one application, newest first."""
        return await self.audit_service.get_audit_logs(entity_id=application_id, limit=limit)
