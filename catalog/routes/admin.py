from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from catalog.routes.products import get_workflow_service
from catalog.workflow_service import ProductWorkflowService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/schedule/process")
async def process_schedule(
    limit: int = Query(default=50, ge=1, le=1000),
    service: ProductWorkflowService = Depends(get_workflow_service),
) -> JSONResponse:
    """
    Publish scheduled products whose time has arrived (same work as one scheduler poll).
    Returns counts of processed, published and failed products.
    """
    result = await service.process_scheduled_publications(batch_size=limit)
    return JSONResponse(
        status_code=200,
        content={
            "status": "ok",
            "processed": result["processed"],
            "succeeded": result["succeeded"],
            "failed": {str(k): v for k, v in result["failed"].items()},
        },
    )
