"""
PROGRESS BILLING API ROUTES

Routes for:
- Payment application creation and continuation-sheet summary
- Contractor line edits and reviewer line item verification
- Status transitions: submit, review, approve, reject, recall, check-ready, resubmit
- Delete (draft, or forced by an admin)
- Change orders
- Line item catalog edits (until an application leaves draft)
- Audit trail

All routes require authentication. The engine receives the caller's identity
explicitly as an `actor` dict; nothing reads ambient session state.

Every application route resolves the application's project and checks access
before doing any work. An application on a project the caller cannot read
answers 404, exactly like one that does not exist.
"""

from fastapi import APIRouter, HTTPException, status, Depends
from typing import Optional, Dict, Any
import logging

from auth import get_current_user
from permissions import PermissionChecker, actor_context
from models import (
    ApprovalRequest, ChangeOrderCreate, LineItemSubmissionUpdate, LineItemUpsert,
    LineItemVerify, PaymentApplicationCreate, RecallRequest, RejectionRequest
)
from core.billing_errors import (
    BillingEngineError, BillingValidationError
)
from core.approval_workflow import DeleteNotAllowedError
from payment_application_service import (
    ApplicationNotFoundError, ContractNotFoundError, PaymentApplicationService
)

logger = logging.getLogger(__name__)


# Router
billing_router = APIRouter(prefix="/api/v2/billing", tags=["Progress Billing"])

# Wired by server.py at startup; tests override the dependencies below
_billing_service: Optional[PaymentApplicationService] = None
_permission_checker: Optional[PermissionChecker] = None


def configure(service: PaymentApplicationService, permission_checker: PermissionChecker) -> None:
    global _billing_service, _permission_checker
    _billing_service = service
    _permission_checker = permission_checker


def get_billing_service() -> PaymentApplicationService:
    if _billing_service is None:
        raise HTTPException(status_code=503, detail="Billing service not configured")
    return _billing_service


def get_permission_checker() -> PermissionChecker:
    if _permission_checker is None:
        raise HTTPException(status_code=503, detail="Permission checker not configured")
    return _permission_checker


def error_status_code(error: BillingEngineError) -> int:
    """HTTP status for a named engine error."""
    if isinstance(error, (ApplicationNotFoundError, ContractNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, DeleteNotAllowedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, BillingValidationError):
        return 422
    return status.HTTP_409_CONFLICT


def raise_http_error(error: BillingEngineError):
    logger.info(f"[BILLING] Rejected request: {error.kind}: {error.message}")
    raise HTTPException(status_code=error_status_code(error), detail=error.to_dict())


async def authorize_application(
    application_id: str,
    user: Dict[str, Any],
    service: PaymentApplicationService,
    checker: PermissionChecker,
    require_write: bool = False
) -> str:
    """Project id of the application once the caller may act on it."""
    try:
        project_id = await service.load_project_id(application_id)
    except BillingEngineError as e:
        raise_http_error(e)

    if not await checker.can_read_project(user, project_id):
        logger.warning(
            f"[BILLING] User {user['user_id']} has no access to application {application_id}"
        )
        raise_http_error(ApplicationNotFoundError(application_id))

    if require_write:
        await checker.check_project_access(user, project_id, require_write=True)
    return project_id


async def authorize_contract(
    contract_id: str,
    user: Dict[str, Any],
    service: PaymentApplicationService,
    checker: PermissionChecker
) -> None:
    try:
        contract = await service.load_contract(contract_id)
    except BillingEngineError as e:
        raise_http_error(e)
    await checker.check_project_access(user, contract.project_id, require_write=True)


# =============================================================================
# APPLICATIONS
# =============================================================================

@billing_router.post("/contracts/{contract_id}/applications", status_code=201)
async def create_payment_application(
    contract_id: str,
    payload: PaymentApplicationCreate,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Open a draft application with previous percents snapshotted from the last approval"""
    user = await checker.load_user(current_user)
    await authorize_contract(contract_id, user, service, checker)

    try:
        app = await service.create_application(contract_id, payload, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)

    return app.model_dump(mode="json")


@billing_router.get("/applications")
async def list_payment_applications(
    project_id: Optional[str] = None,
    contract_id: Optional[str] = None,
    status_filter: Optional[str] = None,
    limit: int = 100,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """List application headers, newest first"""
    user = await checker.load_user(current_user)
    if project_id:
        await checker.check_project_access(user, project_id)
    elif user.get("role") != "Admin":
        raise HTTPException(status_code=400, detail="project_id is required")

    applications = await service.list_applications(
        project_id=project_id, contract_id=contract_id, status=status_filter, limit=limit
    )
    return {"applications": applications, "count": len(applications)}


@billing_router.get("/applications/{application_id}")
async def get_payment_application(
    application_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Application with its reconciled continuation sheet and grand total"""
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker)

    try:
        return await service.get_application_summary(application_id)
    except BillingEngineError as e:
        raise_http_error(e)


@billing_router.get("/applications/{application_id}/audit-logs")
async def get_payment_application_audit_logs(
    application_id: str,
    limit: int = 100,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Who did what to the application, newest first"""
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker)

    logs = await service.get_audit_trail(application_id, limit=limit)
    return {"application_id": application_id, "audit_logs": logs, "count": len(logs)}


@billing_router.put("/applications/{application_id}/line-items/{line_item_id}/submission")
async def record_line_item_submission(
    application_id: str,
    line_item_id: str,
    payload: LineItemSubmissionUpdate,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Contractor revises a line while the application is draft or rejected"""
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)

    try:
        app = await service.record_submission(application_id, line_item_id, payload, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)

    progress = app.progress_for(line_item_id)
    return {"status": "success", "application_id": app.id, "line_item": progress.model_dump()}


@billing_router.patch("/applications/{application_id}/line-items/{line_item_id}")
async def verify_line_item(
    application_id: str,
    line_item_id: str,
    payload: LineItemVerify,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Reviewer sets the verified percent for one line"""
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)

    try:
        app = await service.verify_line_item(application_id, line_item_id, payload, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)

    progress = app.progress_for(line_item_id)
    return {"status": "success", "application_id": app.id, "line_item": progress.model_dump()}


# =============================================================================
# TRANSITIONS
# =============================================================================

@billing_router.post("/applications/{application_id}/submit")
async def submit_payment_application(
    application_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.submit(application_id, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/review")
async def flag_payment_application_for_review(
    application_id: str,
    payload: ApprovalRequest,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.flag_for_review(application_id, actor_context(user), payload.notes)
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/approve")
async def approve_payment_application(
    application_id: str,
    payload: ApprovalRequest,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Approve and freeze the verified percents as the next baseline"""
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.approve(application_id, actor_context(user), payload.notes)
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/reject")
async def reject_payment_application(
    application_id: str,
    payload: RejectionRequest,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.reject(application_id, actor_context(user), payload.reason)
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/recall")
async def recall_payment_application(
    application_id: str,
    payload: RecallRequest,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Reopen an approved application and revoke its baseline freeze"""
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.recall(application_id, actor_context(user), payload.reason)
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/check-ready")
async def mark_payment_application_check_ready(
    application_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.mark_check_ready(application_id, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.post("/applications/{application_id}/resubmit")
async def resubmit_payment_application(
    application_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        outcome = await service.resubmit(application_id, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)
    return outcome.to_dict()


@billing_router.delete("/applications/{application_id}")
async def delete_payment_application(
    application_id: str,
    force: bool = False,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Delete a draft; anything past draft needs force=true from an admin"""
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        return await service.delete_application(application_id, actor_context(user), force=force)
    except BillingEngineError as e:
        raise_http_error(e)


# =============================================================================
# CHANGE ORDERS
# =============================================================================

@billing_router.get("/applications/{application_id}/change-orders")
async def get_change_orders(
    application_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
) -> Dict[str, Any]:
    """Change order export shape for the document generator"""
    user = await checker.load_user(current_user)
    await authorize_application(application_id, user, service, checker)
    try:
        return await service.export_change_orders(application_id)
    except BillingEngineError as e:
        raise_http_error(e)


@billing_router.post("/applications/{application_id}/change-orders", status_code=201)
async def add_change_order(
    application_id: str,
    payload: ChangeOrderCreate,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        return await service.add_change_order(application_id, payload, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)


@billing_router.delete("/applications/{application_id}/change-orders/{change_order_id}")
async def remove_change_order(
    application_id: str,
    change_order_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_application(application_id, user, service, checker, require_write=True)
    try:
        return await service.remove_change_order(application_id, change_order_id, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)


# =============================================================================
# LINE ITEM CATALOG
# =============================================================================

@billing_router.get("/contracts/{contract_id}/line-items")
async def get_line_item_catalog(
    contract_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Scheduled values, balance check and whether edits are still allowed"""
    user = await checker.load_user(current_user)
    try:
        contract = await service.load_contract(contract_id)
    except BillingEngineError as e:
        raise_http_error(e)
    await checker.check_project_access(user, contract.project_id)
    return await service.get_catalog(contract_id)


@billing_router.put("/contracts/{contract_id}/line-items/{line_item_id}")
async def upsert_catalog_line_item(
    contract_id: str,
    line_item_id: str,
    payload: LineItemUpsert,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_contract(contract_id, user, service, checker)
    try:
        return await service.upsert_line_item(contract_id, line_item_id, payload, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)


@billing_router.delete("/contracts/{contract_id}/line-items/{line_item_id}")
async def remove_catalog_line_item(
    contract_id: str,
    line_item_id: str,
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    user = await checker.require_reviewer(current_user)
    await authorize_contract(contract_id, user, service, checker)
    try:
        return await service.remove_line_item(contract_id, line_item_id, actor_context(user))
    except BillingEngineError as e:
        raise_http_error(e)


# =============================================================================
# WORKFLOW
# =============================================================================

@billing_router.get("/workflow")
async def get_payment_application_workflow(
    current_user: dict = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_billing_service),
    checker: PermissionChecker = Depends(get_permission_checker)
):
    """Payment application states and the actions that move between them"""
    await checker.load_user(current_user)
    return service.workflow.describe()
