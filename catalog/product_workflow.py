"""
Product publication workflow:

    draft -> pending_verification -> verified -> published -> archived
    pending_verification -> draft      (reject, reason required)
    draft | verified -> published      (all publish requirements met)
    published | verified | pending_verification -> archived
    archived -> draft                  (restore)

Admin overrides go through TransitionEngine.force_transition and bypass this table.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from catalog.product import Product, ProductStatus
from catalog.state_definition import Edge, StateDefinition, StateMetadata, ValidationResult
from catalog.transition_engine import TransitionEngine

PERMISSION_VERIFY = "product.verify"
PERMISSION_PUBLISH = "product.publish"
PERMISSION_ARCHIVE = "product.archive"
PERMISSION_OVERRIDE = "product.override"


def _positive_price(price: Any) -> bool:
    if price is None:
        return False
    try:
        return Decimal(str(price)) > 0
    except InvalidOperation:
        return False


def publish_requirements(product: Product) -> list[str]:
    """Every unmet publish requirement; empty when the product can go live."""
    missing = []
    if not (product.name or "").strip():
        missing.append("Product name is required")
    if not _positive_price(product.market_price):
        missing.append("Product price must be greater than zero")
    if product.category_id is None:
        missing.append("Product category is required")
    if not product.has_image():
        missing.append("Product image is required")
    if not (product.description or "").strip():
        missing.append("Product description is required")
    if not product.active_links():
        missing.append("Product has no active link to a marketplace")
    return missing


def verification_requirements(product: Product) -> list[str]:
    missing = []
    if not (product.name or "").strip():
        missing.append("Product name is required for verification")
    if not (product.slug or "").strip():
        missing.append("Product slug is required for verification")
    if not _positive_price(product.market_price):
        missing.append("Product price is required for verification")
    if product.category_id is None:
        missing.append("Product category is required for verification")
    if not product.has_image():
        missing.append("Product image is required for verification")
    return missing


# -- guards: pure predicates over (product, context)


def has_verify_permission(product: Product, context: Mapping[str, Any]) -> bool:
    return PERMISSION_VERIFY in (context.get("permissions") or ())


def has_rejection_reason(product: Product, context: Mapping[str, Any]) -> bool:
    return bool(str(context.get("reason") or "").strip())


# -- validators


def can_publish(product: Product, context: Mapping[str, Any]) -> ValidationResult:
    return ValidationResult.failed(publish_requirements(product))


def can_verify(product: Product, context: Mapping[str, Any]) -> ValidationResult:
    return ValidationResult.failed(verification_requirements(product))


# -- after hooks


def clear_publication_schedule(product: Product, from_state: str, to_state: str, context: Mapping[str, Any]) -> None:
    product.scheduled_at = None


def clear_verification(product: Product, from_state: str, to_state: str, context: Mapping[str, Any]) -> None:
    # Back to editing: the product must be verified again
    product.verified_at = None
    product.verified_by = None


PRODUCT_METADATA = {
    ProductStatus.DRAFT: StateMetadata(
        value="draft",
        label="Draft",
        color="gray",
        icon="fas fa-edit",
        description="Entered by an admin, not yet submitted for verification",
        css_class="bg-gray-100 text-gray-800",
    ),
    ProductStatus.PENDING_VERIFICATION: StateMetadata(
        value="pending_verification",
        label="Pending Verification",
        color="yellow",
        icon="fas fa-clock",
        description="Awaiting review by a second admin",
        css_class="bg-yellow-100 text-yellow-800",
    ),
    ProductStatus.VERIFIED: StateMetadata(
        value="verified",
        label="Verified",
        color="blue",
        icon="fas fa-check-circle",
        description="Data validated, ready for publishing",
        css_class="bg-blue-100 text-blue-800",
    ),
    ProductStatus.PUBLISHED: StateMetadata(
        value="published",
        label="Published",
        color="green",
        icon="fas fa-globe",
        description="Live and visible to public users",
        css_class="bg-green-100 text-green-800",
    ),
    ProductStatus.ARCHIVED: StateMetadata(
        value="archived",
        label="Archived",
        color="red",
        icon="fas fa-archive",
        description="Hidden from users, kept for historical records",
        css_class="bg-red-100 text-red-800",
    ),
}


def build_product_definition() -> StateDefinition:
    S = ProductStatus
    return StateDefinition(
        name="product",
        states=list(S),
        initial=S.DRAFT,
        edges=[
            Edge.between(S.DRAFT, S.PENDING_VERIFICATION),
            Edge.between(S.PENDING_VERIFICATION, S.VERIFIED, guard=has_verify_permission, validator=can_verify),
            Edge.between(S.PENDING_VERIFICATION, S.DRAFT, guard=has_rejection_reason),
            Edge.between([S.DRAFT, S.VERIFIED], S.PUBLISHED, validator=can_publish),
            Edge.between([S.PUBLISHED, S.VERIFIED, S.PENDING_VERIFICATION], S.ARCHIVED),
            Edge.between(S.ARCHIVED, S.DRAFT),
        ],
        timestamp_bindings={
            S.PUBLISHED: "published_at",
            S.VERIFIED: "verified_at",
            S.ARCHIVED: "archived_at",
        },
        metadata=PRODUCT_METADATA,
        state_after_hooks={
            S.PUBLISHED: [clear_publication_schedule],
            S.DRAFT: [clear_verification],
        },
    )


PRODUCT_STATE_DEFINITION = build_product_definition()


def create_product_engine(clock=None) -> TransitionEngine:
    return TransitionEngine(PRODUCT_STATE_DEFINITION, clock=clock)
