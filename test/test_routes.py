"""
Admin HTTP API: status codes and error payloads.
The workflow service is swapped for one backed by in-memory collaborators;
the app lifespan (Postgres/Redis) is not started.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from _helper import (
    ALL_PERMISSIONS,
    FIXED_NOW,
    FakeClock,
    InMemoryAuditLog,
    InMemoryProductRepository,
    InMemorySchedule,
    StaticPermissions,
    make_product,
)
from catalog.main import app
from catalog.product import ProductStatus
from catalog.routes.products import get_workflow_service
from catalog.workflow_service import ProductWorkflowService

ADMIN = {"X-Admin-Id": "1"}
EDITOR = {"X-Admin-Id": "2"}


@pytest.fixture
def repository():
    return InMemoryProductRepository(
        make_product(id=1),
        make_product(id=2, slug="bare", market_price=Decimal("0"), links=[]),
        make_product(id=3, slug="pending", status=ProductStatus.PENDING_VERIFICATION),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(repository, clock):
    service = ProductWorkflowService(
        repository=repository,
        audit_log=InMemoryAuditLog(),
        permissions=StaticPermissions({1: ALL_PERMISSIONS}),
        schedule=InMemorySchedule(),
        clock=clock,
    )
    app.dependency_overrides[get_workflow_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_list_states(client):
    body = client.get("/admin/products/states").json()

    assert body["initial"] == "draft"
    assert [s["value"] for s in body["states"]] == ProductStatus.values()
    assert body["states"][1]["label"] == "Pending Verification"


def test_publish_immediately(client, repository):
    resp = client.post("/admin/products/1/publish", json={"publish_type": "immediate"}, headers=ADMIN)

    assert resp.status_code == 200
    body = resp.json()
    assert body["product"]["status"] == "published"
    assert body["transition"]["from"] == "draft"
    assert body["transition"]["to"] == "published"
    assert repository.stored(1).status == ProductStatus.PUBLISHED


def test_publish_validation_failure_is_a_checklist(client):
    resp = client.post("/admin/products/2/publish", json={}, headers=ADMIN)

    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "validation_rejected"
    assert body["reasons"] == [
        "Product price must be greater than zero",
        "Product has no active link to a marketplace",
    ]
    assert body["message"].startswith("Requirements not met: ")


def test_force_publish_without_reason(client):
    resp = client.post("/admin/products/2/publish", json={"publish_type": "force"}, headers=ADMIN)

    assert resp.status_code == 422
    assert resp.json()["error"] == "override_reason_required"


def test_force_publish_with_reason(client):
    resp = client.post(
        "/admin/products/2/publish",
        json={"publish_type": "force", "reason": "partner launch"},
        headers=ADMIN,
    )

    assert resp.status_code == 200
    assert resp.json()["transition"]["context"] == {"force": True}


def test_scheduled_publish_is_accepted(client):
    when = (FIXED_NOW + timedelta(days=2)).isoformat()

    resp = client.post(
        "/admin/products/1/publish",
        json={"publish_type": "scheduled", "scheduled_at": when},
        headers=ADMIN,
    )

    assert resp.status_code == 202
    assert resp.json()["status"] == "scheduled"
    assert resp.json()["product"]["scheduled_at"] == when
    assert resp.json()["product"]["status"] == "draft"


def test_scheduled_publish_outside_window(client):
    resp = client.post(
        "/admin/products/1/publish",
        json={"publish_type": "scheduled", "scheduled_at": (FIXED_NOW + timedelta(days=45)).isoformat()},
        headers=ADMIN,
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_schedule"

    missing = client.post("/admin/products/1/publish", json={"publish_type": "scheduled"}, headers=ADMIN)
    assert missing.status_code == 422


def test_cancel_schedule(client):
    client.post(
        "/admin/products/1/publish",
        json={"publish_type": "scheduled", "scheduled_at": (FIXED_NOW + timedelta(days=1)).isoformat()},
        headers=ADMIN,
    )

    resp = client.request("DELETE", "/admin/products/1/schedule", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["product"]["scheduled_at"] is None


def test_unavailable_action_is_a_conflict(client):
    resp = client.post("/admin/products/1/archive", json={"reason": "typo"}, headers=ADMIN)

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "illegal_transition"
    assert body["message"] == "This action is not available from the current status"
    assert (body["from"], body["to"]) == ("draft", "archived")


def test_repeating_an_action_is_a_conflict(client):
    resp = client.post("/admin/products/1/restore", headers=ADMIN)

    assert resp.status_code == 409
    assert resp.json()["error"] == "noop_transition"


def test_verify_without_permission_is_guard_rejected(client):
    resp = client.post("/admin/products/3/verify", json={}, headers=EDITOR)

    assert resp.status_code == 409
    assert resp.json()["error"] == "guard_rejected"
    assert resp.json()["guard"] == "has_verify_permission"


def test_verify_with_permission(client, repository):
    resp = client.post("/admin/products/3/verify", json={"notes": "ok"}, headers=ADMIN)

    assert resp.status_code == 200
    assert repository.stored(3).verified_by == 1


def test_archive_without_permission_is_forbidden(client):
    resp = client.post("/admin/products/3/archive", json={}, headers=EDITOR)

    assert resp.status_code == 403
    assert resp.json()["permission"] == "product.archive"


def test_unknown_product(client):
    resp = client.post("/admin/products/404/request-verification", headers=ADMIN)
    assert resp.status_code == 404


def test_admin_header_is_required(client):
    resp = client.post("/admin/products/1/request-verification")
    assert resp.status_code == 422


def test_override(client, repository):
    resp = client.post(
        "/admin/products/3/override",
        json={"target_status": "published", "reason": "migrated listing"},
        headers=ADMIN,
    )

    assert resp.status_code == 200
    assert repository.stored(3).status == ProductStatus.PUBLISHED
    assert repository.stored(3).state_history.last().forced is True


def test_transition_queries(client):
    allowed = client.get("/admin/products/3/transitions", headers=ADMIN).json()
    assert [t["value"] for t in allowed["allowed"]] == ["verified", "archived"]

    report = client.get("/admin/products/2/transitions/published").json()
    assert report["allowed"] is False
    assert len(report["reasons"]) == 2

    bad_target = client.get("/admin/products/2/transitions/deleted")
    assert bad_target.status_code == 422


def test_history_endpoint(client):
    client.post("/admin/products/1/request-verification", headers=ADMIN)
    client.post("/admin/products/1/reject", json={"reason": "needs photos"}, headers=ADMIN)

    body = client.get("/admin/products/1/history", params={"limit": 1}).json()

    assert len(body["history"]) == 1
    assert body["history"][0]["to"] == "draft"
    assert body["history"][0]["reason"] == "needs photos"


def test_process_schedule(client, repository, clock):
    client.post(
        "/admin/products/1/publish",
        json={"publish_type": "scheduled", "scheduled_at": (FIXED_NOW + timedelta(hours=1)).isoformat()},
        headers=ADMIN,
    )
    clock.advance(hours=1)

    resp = client.post("/admin/schedule/process")

    assert resp.status_code == 200
    assert resp.json()["succeeded"] == [1]
    assert repository.stored(1).status == ProductStatus.PUBLISHED
