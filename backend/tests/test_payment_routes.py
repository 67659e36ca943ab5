"""
Progress billing API: status codes and error bodies
"""
import asyncio
from datetime import timedelta

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient

from audit_service import AuditService
from auth import create_access_token, decode_access_token, get_current_user
from permissions import PermissionChecker
from payment_application_service import PaymentApplicationService
import payment_routes

from conftest import ADMIN, OUTSIDER, PM, READER, SUB

BASE = "/api/v2/billing"


@pytest.fixture
def caller():
    """Mutable identity returned by the overridden auth dependency."""
    return {"user_id": SUB["user_id"]}


@pytest.fixture
def client(fake_client, fake_db, notifier, caller):
    app = FastAPI()
    app.include_router(payment_routes.billing_router)

    service = PaymentApplicationService(fake_client, fake_db, AuditService(fake_db), notifier)
    asyncio.run(service.create_indexes())
    checker = PermissionChecker(fake_db)
    app.dependency_overrides[get_current_user] = lambda: dict(caller)
    app.dependency_overrides[payment_routes.get_billing_service] = lambda: service
    app.dependency_overrides[payment_routes.get_permission_checker] = lambda: checker

    return TestClient(app)


def _create(client, li1=50, li2=25):
    response = client.post(f"{BASE}/contracts/contract-1/applications", json={
        "line_items": [
            {"line_item_id": "li-1", "submitted_percent": li1, "material_stored": 0},
            {"line_item_id": "li-2", "submitted_percent": li2},
        ],
        "notes": "Pay app #1"
    })
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _as(caller, user):
    caller["user_id"] = user["user_id"]


class TestApplications:

    def test_create_and_read_summary(self, client):
        app_id = _create(client)
        response = client.get(f"{BASE}/applications/{app_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["application"]["status"] == "draft"
        assert data["aggregate"]["grand_total"] == 4000.0
        assert data["allowed_actions"] == ["submit"]

    def test_unknown_application(self, client):
        response = client.get(f"{BASE}/applications/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "APPLICATION_NOT_FOUND"

    def test_percent_out_of_range(self, client):
        response = client.post(f"{BASE}/contracts/contract-1/applications", json={
            "line_items": [{"line_item_id": "li-1", "submitted_percent": 140}]
        })
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "PERCENT_OUT_OF_RANGE"

    def test_nan_percent_is_a_named_error(self, client):
        response = client.post(
            f"{BASE}/contracts/contract-1/applications",
            content='{"line_items": [{"line_item_id": "li-1", "submitted_percent": NaN}]}',
            headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["kind"] == "PERCENT_OUT_OF_RANGE"
        assert detail["value"] == "nan"

    def test_infinite_change_order_amount(self, client, caller):
        app_id = _create(client)
        _as(caller, PM)
        response = client.post(
            f"{BASE}/applications/{app_id}/change-orders",
            content='{"description": "Extra", "amount": Infinity}',
            headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "INVALID_CHANGE_ORDER"

    def test_contractor_revises_draft_line(self, client):
        app_id = _create(client)
        url = f"{BASE}/applications/{app_id}/line-items/li-1/submission"

        response = client.put(url, json={"submitted_percent": 55, "material_stored": 250})
        assert response.status_code == 200
        assert response.json()["line_item"]["submitted_percent"] == 55
        assert response.json()["line_item"]["material_stored"] == 250

        client.post(f"{BASE}/applications/{app_id}/submit")
        response = client.put(url, json={"submitted_percent": 70})
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "APPLICATION_LOCKED"

    def test_audit_logs(self, client):
        app_id = _create(client)
        client.post(f"{BASE}/applications/{app_id}/submit")

        response = client.get(f"{BASE}/applications/{app_id}/audit-logs")
        assert response.status_code == 200
        assert response.json()["count"] == 2
        assert {log["action"] for log in response.json()["audit_logs"]} == {"create", "submit"}

    def test_unknown_line_item(self, client):
        response = client.post(f"{BASE}/contracts/contract-1/applications", json={
            "line_items": [{"line_item_id": "li-9", "submitted_percent": 10}]
        })
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "UNKNOWN_LINE_ITEM"

    def test_list_requires_project_for_non_admin(self, client):
        _create(client)
        assert client.get(f"{BASE}/applications").status_code == 400

        response = client.get(f"{BASE}/applications", params={"project_id": "project-1"})
        assert response.status_code == 200
        assert response.json()["count"] == 1


class TestTransitions:

    def test_full_cycle(self, client, caller):
        app_id = _create(client)
        assert client.post(f"{BASE}/applications/{app_id}/submit").json()["to_state"] == "submitted"

        _as(caller, PM)
        response = client.patch(
            f"{BASE}/applications/{app_id}/line-items/li-1",
            json={"pm_verified_percent": 45, "pm_adjustment_reason": "Site walk"}
        )
        assert response.status_code == 200
        assert response.json()["line_item"]["pm_verified_percent"] == 45

        response = client.post(f"{BASE}/applications/{app_id}/approve", json={"notes": "ok"})
        assert response.status_code == 200
        assert response.json()["from_state"] == "submitted"
        assert response.json()["to_state"] == "approved"

        response = client.post(f"{BASE}/applications/{app_id}/recall", json={"reason": "Recheck"})
        assert response.json()["to_state"] == "needs_review"

        response = client.post(f"{BASE}/applications/{app_id}/recall", json={"reason": "Again"})
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "INVALID_TRANSITION"

    def test_approve_from_draft(self, client, caller):
        app_id = _create(client)
        _as(caller, PM)

        response = client.post(f"{BASE}/applications/{app_id}/approve", json={})
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["kind"] == "INVALID_TRANSITION"
        assert detail["from_state"] == "draft"
        assert detail["action"] == "approve"
        assert client.get(f"{BASE}/applications/{app_id}").json()["application"]["status"] == "draft"

    def test_reject_without_reason(self, client, caller):
        app_id = _create(client)
        client.post(f"{BASE}/applications/{app_id}/submit")
        _as(caller, PM)

        response = client.post(f"{BASE}/applications/{app_id}/reject", json={"reason": "  "})
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "MISSING_REJECTION_REASON"

    def test_contractor_cannot_approve(self, client):
        app_id = _create(client)
        client.post(f"{BASE}/applications/{app_id}/submit")

        response = client.post(f"{BASE}/applications/{app_id}/approve", json={})
        assert response.status_code == 403

    def test_workflow_description(self, client):
        response = client.get(f"{BASE}/workflow")
        assert response.status_code == 200
        assert response.json()["graph"]["draft"] == ["submitted"]

    def test_empty_submission(self, client):
        app_id = _create(client, li1=0, li2=0)
        response = client.post(f"{BASE}/applications/{app_id}/submit")
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "EMPTY_SUBMISSION"


class TestDeleteAndChangeOrders:

    def test_delete_submitted_needs_admin_force(self, client, caller):
        app_id = _create(client)
        client.post(f"{BASE}/applications/{app_id}/submit")

        response = client.delete(f"{BASE}/applications/{app_id}", params={"force": "true"})
        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "DELETE_NOT_ALLOWED"

        _as(caller, ADMIN)
        response = client.delete(f"{BASE}/applications/{app_id}", params={"force": "true"})
        assert response.status_code == 200
        assert response.json()["forced"] is True

    def test_change_orders(self, client, caller):
        app_id = _create(client)
        _as(caller, PM)

        response = client.post(
            f"{BASE}/applications/{app_id}/change-orders",
            json={"description": "Extra outlets", "amount": 500}
        )
        assert response.status_code == 201
        assert response.json()["change_orders"][0]["percentage"] == 5.0

        response = client.post(
            f"{BASE}/applications/{app_id}/change-orders", json={"description": "Bad", "amount": 0}
        )
        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == "INVALID_CHANGE_ORDER"

        response = client.delete(f"{BASE}/applications/{app_id}/change-orders/co-404")
        assert response.status_code == 409


class TestProjectAccess:

    def test_outsider_cannot_reach_application(self, client, caller):
        app_id = _create(client)
        _as(caller, OUTSIDER)

        assert client.post(f"{BASE}/applications/{app_id}/submit").status_code == 404
        assert client.post(f"{BASE}/applications/{app_id}/approve", json={}).status_code == 404
        assert client.delete(f"{BASE}/applications/{app_id}").status_code == 404
        assert client.get(f"{BASE}/applications/{app_id}/change-orders").status_code == 404
        assert client.get(f"{BASE}/applications/{app_id}/audit-logs").status_code == 404

        _as(caller, SUB)
        assert client.get(f"{BASE}/applications/{app_id}").json()["application"]["status"] == "draft"

    def test_hidden_and_missing_applications_look_the_same(self, client, caller):
        app_id = _create(client)
        _as(caller, OUTSIDER)

        hidden = client.get(f"{BASE}/applications/{app_id}")
        missing = client.get(f"{BASE}/applications/missing")
        assert hidden.status_code == missing.status_code == 404
        assert hidden.json()["detail"]["kind"] == missing.json()["detail"]["kind"] == "APPLICATION_NOT_FOUND"

    def test_read_only_member_can_read_but_not_change(self, client, caller):
        app_id = _create(client)
        _as(caller, READER)

        assert client.get(f"{BASE}/applications/{app_id}").status_code == 200
        assert client.post(f"{BASE}/applications/{app_id}/submit").status_code == 403
        response = client.put(
            f"{BASE}/applications/{app_id}/line-items/li-1/submission", json={"submitted_percent": 60}
        )
        assert response.status_code == 403

    def test_outsider_cannot_create_on_contract(self, client, caller):
        _as(caller, OUTSIDER)
        response = client.post(f"{BASE}/contracts/contract-1/applications", json={
            "line_items": [{"line_item_id": "li-1", "submitted_percent": 10}]
        })
        assert response.status_code == 403


class TestCatalog:

    def test_edit_until_an_application_is_submitted(self, client, caller):
        app_id = _create(client)
        _as(caller, PM)
        url = f"{BASE}/contracts/contract-1/line-items/li-3"

        response = client.put(url, json={"item_number": "3", "description": "Paint", "scheduled_value": 1500})
        assert response.status_code == 200
        assert response.json()["scheduled_total"] == 11500.0
        assert client.delete(url).status_code == 200

        _as(caller, SUB)
        client.post(f"{BASE}/applications/{app_id}/submit")
        assert client.get(f"{BASE}/contracts/contract-1/line-items").json()["locked"] is True

        _as(caller, PM)
        response = client.put(url, json={"description": "Paint", "scheduled_value": 1500})
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "CATALOG_LOCKED"

    def test_catalog_edits_need_a_reviewer(self, client):
        response = client.put(
            f"{BASE}/contracts/contract-1/line-items/li-3",
            json={"description": "Paint", "scheduled_value": 1500}
        )
        assert response.status_code == 403

    def test_outsider_cannot_edit_catalog(self, client, caller):
        _as(caller, OUTSIDER)
        response = client.delete(f"{BASE}/contracts/contract-1/line-items/li-2")
        assert response.status_code == 403


class TestAuth:

    def test_token_round_trip(self):
        token = create_access_token({"user_id": "pm-1"})
        assert decode_access_token(token)["user_id"] == "pm-1"

    def test_bad_token_is_401(self):
        app = FastAPI()
        app.include_router(payment_routes.billing_router)
        response = TestClient(app).get(
            f"{BASE}/applications", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401

    def test_expired_token(self):
        token = create_access_token({"user_id": "pm-1"}, ttl=timedelta(seconds=-5))
        with pytest.raises(HTTPException) as exc:
            decode_access_token(token)
        assert exc.value.status_code == 401

    def test_role_claim_passes_through(self):
        token = create_access_token({"user_id": "pm-1", "role": "ProjectManager"})
        user = asyncio.run(get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)))
        assert user == {"user_id": "pm-1", "role": "ProjectManager"}
