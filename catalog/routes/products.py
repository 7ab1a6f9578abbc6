from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from catalog.db import PostgresAuditLog, PostgresPermissionChecker, PostgresProductRepository, get_pool
from catalog.errors import SchedulingError
from catalog.product import ProductStatus
from catalog.product_workflow import create_product_engine
from catalog.schedule import get_schedule
from catalog.workflow_service import ProductWorkflowService

router = APIRouter(prefix="/admin/products", tags=["products"])

# One engine per entity type, shared by every request
_engine = create_product_engine()

ProductStatusValue = Literal[
    "draft",
    "pending_verification",
    "verified",
    "published",
    "archived",
]


async def get_workflow_service() -> ProductWorkflowService:
    pool = await get_pool()
    return ProductWorkflowService(
        repository=PostgresProductRepository(pool),
        audit_log=PostgresAuditLog(pool),
        permissions=PostgresPermissionChecker(pool),
        schedule=await get_schedule(),
        engine=_engine,
    )


class NotesBody(BaseModel):
    notes: str | None = Field(default=None, description="Optional reviewer notes")


class ReasonBody(BaseModel):
    reason: str = Field(..., min_length=1, description="Why this action is taken (recorded in history)")


class OptionalReasonBody(BaseModel):
    reason: str | None = Field(default=None, description="Optional reason (recorded in history)")


class PublishBody(BaseModel):
    publish_type: Literal["immediate", "scheduled", "force"] = Field(default="immediate")
    scheduled_at: datetime | None = Field(default=None, description="Required for scheduled publish (ISO 8601)")
    notes: str | None = Field(default=None)
    reason: str | None = Field(default=None, description="Required for force publish")


class OverrideBody(BaseModel):
    target_status: ProductStatusValue = Field(..., description="Status to force the product into")
    reason: str = Field(..., min_length=1, description="Mandatory audit reason for the override")


@router.get("/states")
async def list_states(service: ProductWorkflowService = Depends(get_workflow_service)) -> JSONResponse:
    """All workflow states with presentation metadata (labels, colors, icons)."""
    states = [meta.to_dict() for meta in service.engine.get_all_states().values()]
    return JSONResponse(status_code=200, content={"initial": service.engine.initial_state, "states": states})


@router.post("/{product_id}/request-verification")
async def request_verification(
    product_id: int,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    outcome = await service.request_verification(product_id, admin_id)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.post("/{product_id}/verify")
async def verify(
    product_id: int,
    body: NotesBody,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    outcome = await service.verify(product_id, admin_id, notes=body.notes)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.post("/{product_id}/reject")
async def reject(
    product_id: int,
    body: ReasonBody,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    outcome = await service.reject(product_id, admin_id, reason=body.reason)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.post("/{product_id}/publish")
async def publish(
    product_id: int,
    body: PublishBody,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    """
    Publish now, schedule for later (202 Accepted, publishes when the time arrives)
    or force-publish past the publish requirements (reason required).
    """
    if body.publish_type == "scheduled":
        if body.scheduled_at is None:
            raise SchedulingError("Scheduled datetime is required for scheduled publish")
        product = await service.schedule_publication(product_id, admin_id, body.scheduled_at, notes=body.notes)
        return JSONResponse(status_code=202, content={"status": "scheduled", "product": product.to_dict()})
    if body.publish_type == "force":
        outcome = await service.force_publish(product_id, admin_id, reason=body.reason or "")
    else:
        outcome = await service.publish(product_id, admin_id, notes=body.notes)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.delete("/{product_id}/schedule")
async def cancel_schedule(
    product_id: int,
    body: OptionalReasonBody | None = None,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    product = await service.cancel_scheduled_publication(product_id, admin_id, reason=body.reason if body else None)
    return JSONResponse(status_code=200, content={"status": "cancelled", "product": product.to_dict()})


@router.post("/{product_id}/archive")
async def archive(
    product_id: int,
    body: OptionalReasonBody,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    outcome = await service.archive(product_id, admin_id, reason=body.reason)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.post("/{product_id}/restore")
async def restore(
    product_id: int,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    outcome = await service.restore(product_id, admin_id)
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.post("/{product_id}/override")
async def override(
    product_id: int,
    body: OverrideBody,
    admin_id: int = Header(..., alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    """Admin override: moves the product to any status, bypassing the workflow rules. Audited with the reason."""
    outcome = await service.override_transition(
        product_id, admin_id, ProductStatus(body.target_status), reason=body.reason
    )
    return JSONResponse(status_code=200, content=outcome.to_dict())


@router.get("/{product_id}/transitions")
async def allowed_transitions(
    product_id: int,
    admin_id: int | None = Header(default=None, alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    """Workflow actions available from the product's current status."""
    allowed = await service.get_allowed_transitions(product_id, admin_id)
    return JSONResponse(status_code=200, content={"product_id": product_id, "allowed": allowed})


@router.get("/{product_id}/transitions/{target_status}")
async def check_transition(
    product_id: int,
    target_status: ProductStatusValue,
    admin_id: int | None = Header(default=None, alias="X-Admin-Id"),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    """Dry run: would moving to target_status be accepted, and if not, why."""
    report = await service.check_transition(product_id, target_status, admin_id)
    return JSONResponse(status_code=200, content=report)


@router.get("/{product_id}/history")
async def history(
    product_id: int,
    limit: int | None = Query(default=None, ge=1, le=500),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    records = await service.get_status_history(product_id, limit)
    return JSONResponse(
        status_code=200,
        content={"product_id": product_id, "history": [r.to_dict() for r in records]},
    )
