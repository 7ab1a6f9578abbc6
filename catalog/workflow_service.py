"""
Product workflow orchestration: load -> authorize -> engine transition -> save (optimistic
concurrency on version) -> audit log. The engine decides legality; this layer handles
persistence, permissions and the publication schedule.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from catalog.config import settings
from catalog.contracts import AuditLogWriter, PermissionChecker, ProductRepository, PublicationSchedule
from catalog.errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    ProductNotFoundError,
    ReentrantTransitionError,
    SchedulingError,
    TransitionError,
    ValidationRejectedError,
)
from catalog.metrics import scheduled_publications_processed_total
from catalog.product import Product, ProductStatus
from catalog.product_workflow import (
    PERMISSION_ARCHIVE,
    PERMISSION_OVERRIDE,
    PERMISSION_PUBLISH,
    create_product_engine,
)
from catalog.state_definition import normalize_state
from catalog.transition_engine import TransitionEngine, TransitionRequest
from catalog.transition_history import TransitionRecord

logger = logging.getLogger(__name__)

ENTITY_TYPE = "product"


@dataclass
class WorkflowOutcome:
    product: Product
    record: TransitionRecord

    def to_dict(self) -> dict:
        return {"product": self.product.to_dict(), "transition": self.record.to_dict()}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # Naive datetimes from callers are taken as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ProductWorkflowService:
    def __init__(
        self,
        repository: ProductRepository,
        audit_log: AuditLogWriter,
        permissions: PermissionChecker,
        schedule: PublicationSchedule,
        engine: TransitionEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._repository = repository
        self._audit_log = audit_log
        self._permissions = permissions
        self._schedule = schedule
        self._clock = clock or _utcnow
        self.engine = engine or create_product_engine(clock=self._clock)

    # ---------------------------------------------------------------- helpers

    async def _load(self, product_id: int) -> Product:
        product = await self._repository.find_by_id(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def _authorize(self, admin_id: int | None, permission: str) -> frozenset[str]:
        granted = await self._permissions.permissions_for(admin_id)
        if permission not in granted:
            logger.warning("Admin %s denied %s", admin_id, permission)
            raise AuthorizationError(admin_id, permission)
        return granted

    async def _guard_context(self, admin_id: int | None) -> dict[str, Any]:
        granted = await self._permissions.permissions_for(admin_id)
        return {"permissions": sorted(granted)}

    async def _apply(
        self,
        product: Product,
        target: ProductStatus,
        admin_id: int | None,
        action: str,
        reason: str | None = None,
        context: dict[str, Any] | None = None,
        guard_context: dict[str, Any] | None = None,
        forced: bool = False,
        on_commit: Callable[[Product], None] | None = None,
    ) -> WorkflowOutcome:
        old_values = product.to_dict()
        request = TransitionRequest(
            current_state=product.status,
            target_state=target,
            reason=reason,
            actor_id=admin_id,
            context=context or {},
            guard_context=guard_context or {},
        )
        if forced:
            record = self.engine.force_transition(product, request)
        else:
            record = self.engine.transition(product, request)
        if on_commit is not None:
            on_commit(product)

        saved = await self._repository.save(product)
        await self._audit_log.record(
            action,
            ENTITY_TYPE,
            saved.id,
            admin_id,
            old_values=old_values,
            new_values=saved.to_dict(),
            metadata={
                "from": record.from_state,
                "to": record.to_state,
                "reason": reason,
                "forced": forced,
                "context": dict(record.context),
            },
        )
        return WorkflowOutcome(product=saved, record=record)

    # ------------------------------------------------------------ transitions

    async def request_verification(self, product_id: int, admin_id: int) -> WorkflowOutcome:
        product = await self._load(product_id)
        return await self._apply(product, ProductStatus.PENDING_VERIFICATION, admin_id, "REQUEST_VERIFICATION")

    async def verify(self, product_id: int, admin_id: int, notes: str | None = None) -> WorkflowOutcome:
        product = await self._load(product_id)
        permissions = await self._guard_context(admin_id)
        context = {"notes": notes} if notes else {}

        def stamp_verifier(p: Product) -> None:
            p.verified_by = admin_id

        return await self._apply(
            product,
            ProductStatus.VERIFIED,
            admin_id,
            "VERIFY",
            reason=notes,
            context=context,
            guard_context=permissions,
            on_commit=stamp_verifier,
        )

    async def reject(self, product_id: int, admin_id: int, reason: str) -> WorkflowOutcome:
        product = await self._load(product_id)
        return await self._apply(
            product, ProductStatus.DRAFT, admin_id, "REJECT", reason=reason, context={"reason": reason}
        )

    async def publish(self, product_id: int, admin_id: int, notes: str | None = None) -> WorkflowOutcome:
        await self._authorize(admin_id, PERMISSION_PUBLISH)
        product = await self._load(product_id)
        context = {"notes": notes} if notes else {}
        return await self._apply(product, ProductStatus.PUBLISHED, admin_id, "PUBLISH", reason=notes, context=context)

    async def force_publish(self, product_id: int, admin_id: int, reason: str) -> WorkflowOutcome:
        await self._authorize(admin_id, PERMISSION_OVERRIDE)
        product = await self._load(product_id)
        return await self._apply(
            product, ProductStatus.PUBLISHED, admin_id, "FORCE_PUBLISH", reason=reason, forced=True
        )

    async def override_transition(
        self, product_id: int, admin_id: int, target: ProductStatus | str, reason: str
    ) -> WorkflowOutcome:
        await self._authorize(admin_id, PERMISSION_OVERRIDE)
        product = await self._load(product_id)
        return await self._apply(product, target, admin_id, "OVERRIDE_STATUS", reason=reason, forced=True)

    async def archive(self, product_id: int, admin_id: int, reason: str | None = None) -> WorkflowOutcome:
        await self._authorize(admin_id, PERMISSION_ARCHIVE)
        product = await self._load(product_id)
        was_scheduled = product.scheduled_at is not None

        def drop_schedule(p: Product) -> None:
            p.scheduled_at = None

        outcome = await self._apply(
            product, ProductStatus.ARCHIVED, admin_id, "ARCHIVE", reason=reason, on_commit=drop_schedule
        )
        if was_scheduled:
            await self._schedule.remove(product_id)
        return outcome

    async def restore(self, product_id: int, admin_id: int) -> WorkflowOutcome:
        await self._authorize(admin_id, PERMISSION_ARCHIVE)
        product = await self._load(product_id)
        return await self._apply(product, ProductStatus.DRAFT, admin_id, "RESTORE")

    # ------------------------------------------------------------- scheduling

    def validate_schedule_time(self, publish_at: datetime, now: datetime | None = None) -> datetime:
        """Scheduled publish must be strictly in the future and within schedule_max_days."""
        now = _aware(now or self._clock())
        publish_at = _aware(publish_at)
        if publish_at <= now:
            raise SchedulingError("Scheduled datetime must be in the future")
        if publish_at > now + timedelta(days=settings.schedule_max_days):
            raise SchedulingError(
                f"Cannot schedule publish more than {settings.schedule_max_days} days in advance"
            )
        return publish_at

    async def schedule_publication(
        self, product_id: int, admin_id: int, publish_at: datetime, notes: str | None = None
    ) -> Product:
        await self._authorize(admin_id, PERMISSION_PUBLISH)
        publish_at = self.validate_schedule_time(publish_at)
        product = await self._load(product_id)

        # Refuse early if publishing would be rejected today
        err = self.engine.check_transition(product, ProductStatus.PUBLISHED)
        if err is not None:
            raise err

        old_values = product.to_dict()
        product.scheduled_at = publish_at
        saved = await self._repository.save(product)
        await self._schedule.add(product_id, publish_at)
        await self._audit_log.record(
            "SCHEDULE_PUBLISH",
            ENTITY_TYPE,
            product_id,
            admin_id,
            old_values=old_values,
            new_values=saved.to_dict(),
            metadata={"scheduled_at": publish_at.isoformat(), "notes": notes},
        )
        logger.info("Product %s scheduled for publication at %s", product_id, publish_at.isoformat())
        return saved

    async def cancel_scheduled_publication(
        self, product_id: int, admin_id: int, reason: str | None = None
    ) -> Product:
        await self._authorize(admin_id, PERMISSION_PUBLISH)
        product = await self._load(product_id)
        if product.scheduled_at is None:
            raise SchedulingError(f"Product {product_id} has no scheduled publication")

        old_values = product.to_dict()
        product.scheduled_at = None
        saved = await self._repository.save(product)
        await self._schedule.remove(product_id)
        await self._audit_log.record(
            "CANCEL_SCHEDULED_PUBLISH",
            ENTITY_TYPE,
            product_id,
            admin_id,
            old_values=old_values,
            new_values=saved.to_dict(),
            metadata={"reason": reason},
        )
        return saved

    async def process_scheduled_publications(
        self, batch_size: int | None = None, now: datetime | None = None
    ) -> dict:
        """
        Publish every product whose scheduled time has arrived. Each one is an ordinary
        transition at this moment. Rejected publications are dropped from the schedule;
        concurrent-update conflicts stay scheduled and are retried on the next run.
        """
        now = _aware(now or self._clock())
        limit = batch_size or settings.scheduler_batch_size
        due_ids = await self._schedule.due(now, limit)
        succeeded: list[int] = []
        failed: dict[int, str] = {}

        for product_id in due_ids:
            product = await self._repository.find_by_id(product_id)
            if product is None or product.scheduled_at is None:
                await self._schedule.remove(product_id)
                failed[product_id] = "Product not found" if product is None else "Publication no longer scheduled"
                scheduled_publications_processed_total.labels(outcome="dropped").inc()
                continue
            if _aware(product.scheduled_at) > now:
                # Stale score: re-score to the stored scheduled_at
                await self._schedule.add(product_id, _aware(product.scheduled_at))
                continue

            scheduled_at = product.scheduled_at
            try:
                await self._apply(
                    product,
                    ProductStatus.PUBLISHED,
                    None,
                    "SCHEDULED_PUBLISH",
                    context={"scheduled": True, "scheduled_at": _aware(scheduled_at).isoformat()},
                )
            except ReentrantTransitionError:
                raise
            except TransitionError as e:
                failed[product_id] = str(e)
                scheduled_publications_processed_total.labels(outcome="rejected").inc()
                logger.warning("Scheduled publication of product %s rejected: %s", product_id, e)
                await self._schedule.remove(product_id)
                await self._clear_schedule_after_rejection(product_id)
                continue
            except ConcurrentUpdateError as e:
                failed[product_id] = str(e)
                scheduled_publications_processed_total.labels(outcome="conflict").inc()
                logger.warning("Scheduled publication of product %s hit a concurrent update, will retry", product_id)
                continue

            await self._schedule.remove(product_id)
            succeeded.append(product_id)
            scheduled_publications_processed_total.labels(outcome="published").inc()

        return {"processed": len(due_ids), "succeeded": succeeded, "failed": failed}

    async def _clear_schedule_after_rejection(self, product_id: int) -> None:
        # Reload: the in-memory copy may hold a rolled-back or partially hooked state
        product = await self._repository.find_by_id(product_id)
        if product is None or product.scheduled_at is None:
            return
        product.scheduled_at = None
        try:
            await self._repository.save(product)
        except ConcurrentUpdateError:
            logger.warning("Could not clear scheduled_at for product %s (concurrent update)", product_id)

    # ---------------------------------------------------------------- queries

    async def check_transition(
        self, product_id: int, target: ProductStatus | str, admin_id: int | None = None
    ) -> dict:
        product = await self._load(product_id)
        context = await self._guard_context(admin_id)
        err = self.engine.check_transition(product, target, context)
        if err is None:
            reasons = []
        elif isinstance(err, ValidationRejectedError):
            reasons = list(err.reasons)
        else:
            reasons = [str(err)]
        return {
            "allowed": err is None,
            "current_status": product.status.value,
            "target_status": normalize_state(target),
            "error": err.code if err is not None else None,
            "reasons": reasons,
        }

    async def get_allowed_transitions(self, product_id: int, admin_id: int | None = None) -> list[dict]:
        product = await self._load(product_id)
        context = await self._guard_context(admin_id)
        allowed = self.engine.get_allowed_transitions(product, context)
        # Keep declaration order for stable UI rendering
        return [
            self.engine.get_state_metadata(state).to_dict()
            for state in self.engine.definition.states
            if state in allowed
        ]

    async def get_status_history(self, product_id: int, limit: int | None = None) -> list[TransitionRecord]:
        product = await self._load(product_id)
        return self.engine.get_history(product, limit)
