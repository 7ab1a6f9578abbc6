"""
Scheduler: every SCHEDULER_POLL_SECONDS, publish products whose scheduled time has arrived.
- Each due product goes through the normal publish transition at that moment.
- Prometheus /metrics on SCHEDULER_METRICS_PORT.
- Graceful shutdown on SIGTERM/SIGINT (finishes the current batch).
Run: python -m catalog.scheduler
"""
import asyncio
import logging
import signal
import sys
import threading

from catalog.config import settings
from catalog.db import (
    PostgresAuditLog,
    PostgresPermissionChecker,
    PostgresProductRepository,
    close_pool,
    get_pool,
    init_schema,
)
from catalog.product_workflow import create_product_engine
from catalog.schedule import close_redis, get_schedule
from catalog.workflow_service import ProductWorkflowService

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.scheduler_metrics_port)


async def run_once(service: ProductWorkflowService) -> dict:
    result = await service.process_scheduled_publications(batch_size=settings.scheduler_batch_size)
    if result["processed"]:
        logger.info(
            "Scheduled publications: processed=%d published=%d failed=%d",
            result["processed"],
            len(result["succeeded"]),
            len(result["failed"]),
        )
    return result


async def run_scheduler(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    service = ProductWorkflowService(
        repository=PostgresProductRepository(pool),
        audit_log=PostgresAuditLog(pool),
        permissions=PostgresPermissionChecker(pool),
        schedule=await get_schedule(),
        engine=create_product_engine(),
    )
    logger.info(
        "Schema ready. Polling scheduled publications every %ds (batch=%d) ...",
        settings.scheduler_poll_seconds,
        settings.scheduler_batch_size,
    )
    try:
        while not shutdown_event.is_set():
            try:
                await run_once(service)
            except Exception:
                # Infrastructure failure (DB/Redis); try again next poll
                logger.exception("Scheduled publication run failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=settings.scheduler_poll_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_redis()
        await close_pool()
        logger.info("Scheduler stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.scheduler_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_scheduler(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
