import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from catalog.db import close_pool, get_pool
from catalog.errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    IllegalTransitionError,
    OverrideReasonRequiredError,
    ProductNotFoundError,
    SchedulingError,
    TransitionError,
    ValidationRejectedError,
)
from catalog.metrics import get_metrics_bytes, get_metrics_content_type, scheduled_publications_pending
from catalog.routes import admin, products
from catalog.schedule import close_redis, get_redis, get_schedule

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    await get_pool()
    yield
    await close_pool()
    await close_redis()


app = FastAPI(title="Catalog Admin Workflow", lifespan=lifespan)
app.include_router(products.router)
app.include_router(admin.router)


@app.exception_handler(TransitionError)
async def transition_error_handler(request: Request, exc: TransitionError) -> JSONResponse:
    content = exc.to_dict()
    if isinstance(exc, ValidationRejectedError):
        # Rendered as a checklist of unmet requirements
        content["message"] = "Requirements not met: " + ", ".join(exc.reasons)
        return JSONResponse(status_code=422, content=content)
    if isinstance(exc, OverrideReasonRequiredError):
        return JSONResponse(status_code=422, content=content)
    if isinstance(exc, IllegalTransitionError):
        content["message"] = "This action is not available from the current status"
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(ProductNotFoundError)
async def not_found_handler(request: Request, exc: ProductNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "product_not_found", "message": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={"error": "forbidden", "message": str(exc), "permission": exc.permission},
    )


@app.exception_handler(ConcurrentUpdateError)
async def conflict_handler(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": "concurrent_update", "message": str(exc)})


@app.exception_handler(SchedulingError)
async def scheduling_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "invalid_schedule", "message": str(exc)})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: workflow transition counters, schedule depth."""
    try:
        schedule = await get_schedule()
        scheduled_publications_pending.set(await schedule.pending_count())
    except Exception as e:
        logger.warning("Could not sample schedule depth: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
