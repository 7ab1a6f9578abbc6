"""
Product lifecycle rules: edge table, publish/verify requirements, timestamps, overrides.
"""
import itertools
from decimal import Decimal

import pytest

from _helper import FIXED_NOW, FakeClock, make_product
from catalog.errors import (
    GuardRejectedError,
    IllegalTransitionError,
    NoOpTransitionError,
    ValidationRejectedError,
)
from catalog.product import MarketplaceLink, ProductStatus
from catalog.product_workflow import (
    PERMISSION_VERIFY,
    PRODUCT_STATE_DEFINITION,
    create_product_engine,
    publish_requirements,
)
from catalog.transition_engine import TransitionRequest

S = ProductStatus

# (from, to) pairs the edge table permits
PERMITTED = {
    (S.DRAFT, S.PENDING_VERIFICATION),
    (S.PENDING_VERIFICATION, S.VERIFIED),
    (S.PENDING_VERIFICATION, S.DRAFT),
    (S.DRAFT, S.PUBLISHED),
    (S.VERIFIED, S.PUBLISHED),
    (S.PUBLISHED, S.ARCHIVED),
    (S.VERIFIED, S.ARCHIVED),
    (S.PENDING_VERIFICATION, S.ARCHIVED),
    (S.ARCHIVED, S.DRAFT),
}

VERIFIER = {"permissions": [PERMISSION_VERIFY]}


@pytest.fixture
def engine():
    return create_product_engine(clock=FakeClock())


def _move(engine, product, target, **kwargs):
    return engine.transition(product, TransitionRequest(current_state=product.status, target_state=target, **kwargs))


def test_edge_table_matches_the_lifecycle():
    for source, target in itertools.permutations(list(S), 2):
        permitted = bool(PRODUCT_STATE_DEFINITION.edges_between(source.value, target.value))
        assert permitted == ((source, target) in PERMITTED), (source, target)


def test_unlisted_pairs_are_illegal(engine):
    for source, target in itertools.permutations(list(S), 2):
        if (source, target) in PERMITTED:
            continue
        product = make_product(status=source)
        assert engine.can_transition_to(product, target, VERIFIER) is False
        with pytest.raises(IllegalTransitionError):
            _move(engine, product, target, context=VERIFIER)
        assert product.status == source


def test_happy_path_through_the_whole_lifecycle(engine):
    product = make_product()

    _move(engine, product, S.PENDING_VERIFICATION)
    _move(engine, product, S.VERIFIED, context=VERIFIER)
    _move(engine, product, S.PUBLISHED)
    _move(engine, product, S.ARCHIVED, reason="season over")
    _move(engine, product, S.DRAFT)

    assert product.status == S.DRAFT
    assert [(r.from_state, r.to_state) for r in engine.get_history(product)] == [
        ("draft", "pending_verification"),
        ("pending_verification", "verified"),
        ("verified", "published"),
        ("published", "archived"),
        ("archived", "draft"),
    ]


def test_publish_reports_every_missing_requirement(engine):
    product = make_product(market_price=Decimal("0"), links=[])

    with pytest.raises(ValidationRejectedError) as exc:
        _move(engine, product, S.PUBLISHED)

    reasons = exc.value.reasons
    assert any("price" in r for r in reasons)
    assert any("active link" in r for r in reasons)
    assert len(reasons) == 2
    assert product.status == S.DRAFT
    assert product.published_at is None


def test_publish_requirements_cover_all_fields():
    product = make_product(
        name=" ",
        market_price=Decimal("-1"),
        category_id=None,
        image=None,
        image_path=None,
        description="",
        links=[MarketplaceLink(marketplace="shopee", url="https://shopee.example/x", active=False)],
    )

    assert publish_requirements(product) == [
        "Product name is required",
        "Product price must be greater than zero",
        "Product category is required",
        "Product image is required",
        "Product description is required",
        "Product has no active link to a marketplace",
    ]


def test_image_path_satisfies_the_image_requirement():
    product = make_product(image=None, image_path="products/earbuds.jpg")
    assert publish_requirements(product) == []


def test_verify_without_permission_is_guard_rejected(engine):
    product = make_product(status=S.PENDING_VERIFICATION)

    with pytest.raises(GuardRejectedError) as exc:
        _move(engine, product, S.VERIFIED, context={"permissions": ["product.publish"]})

    assert exc.value.guard_name == "has_verify_permission"
    assert product.status == S.PENDING_VERIFICATION


def test_verify_checks_product_data(engine):
    product = make_product(status=S.PENDING_VERIFICATION, slug="", category_id=None)

    with pytest.raises(ValidationRejectedError) as exc:
        _move(engine, product, S.VERIFIED, context=VERIFIER)

    assert exc.value.reasons == [
        "Product slug is required for verification",
        "Product category is required for verification",
    ]


def test_verify_stamps_verified_at(engine):
    product = make_product(status=S.PENDING_VERIFICATION)

    _move(engine, product, S.VERIFIED, context=VERIFIER)

    assert product.verified_at == FIXED_NOW


def test_reject_needs_a_reason(engine):
    product = make_product(status=S.PENDING_VERIFICATION)

    with pytest.raises(GuardRejectedError) as exc:
        _move(engine, product, S.DRAFT)
    assert exc.value.guard_name == "has_rejection_reason"

    _move(engine, product, S.DRAFT, reason="blurry photo", context={"reason": "blurry photo"})
    assert product.status == S.DRAFT


def test_returning_to_draft_clears_verification(engine):
    product = make_product(status=S.ARCHIVED, verified_at=FIXED_NOW, verified_by=4)

    _move(engine, product, S.DRAFT)

    assert product.verified_at is None
    assert product.verified_by is None


def test_archive_from_published_keeps_reason_and_stamps_time(engine):
    product = make_product(status=S.PUBLISHED, published_at=FIXED_NOW)

    record = _move(engine, product, S.ARCHIVED, reason="out of stock")

    assert product.status == S.ARCHIVED
    assert product.archived_at == FIXED_NOW
    assert len(product.state_history) == 1
    assert record.reason == "out of stock"
    assert product.state_history.last().reason == "out of stock"


def test_publishing_clears_a_pending_schedule(engine):
    product = make_product(status=S.VERIFIED, scheduled_at=FIXED_NOW)

    _move(engine, product, S.PUBLISHED)

    assert product.published_at == FIXED_NOW
    assert product.scheduled_at is None


def test_force_publish_bypasses_requirements_and_is_marked(engine):
    product = make_product(market_price=Decimal("0"), links=[], description=None)

    record = engine.force_transition(
        product,
        TransitionRequest(current_state=S.DRAFT, target_state=S.PUBLISHED, reason="launch event", actor_id=1),
    )

    assert product.status == S.PUBLISHED
    assert product.published_at == FIXED_NOW
    assert record.context["force"] is True
    assert record.forced is True


def test_force_flag_in_context_does_not_bypass_normal_transition(engine):
    product = make_product(market_price=Decimal("0"))

    with pytest.raises(ValidationRejectedError):
        _move(engine, product, S.PUBLISHED, context={"force": True}, reason="please")


def test_publishing_an_already_published_product_is_a_noop_error(engine):
    product = make_product(status=S.PUBLISHED)

    with pytest.raises(NoOpTransitionError):
        _move(engine, product, S.PUBLISHED)


def test_allowed_transitions_depend_on_permissions(engine):
    pending = make_product(status=S.PENDING_VERIFICATION)

    assert engine.get_allowed_transitions(pending) == frozenset({"archived"})
    assert engine.get_allowed_transitions(pending, VERIFIER) == frozenset({"verified", "archived"})
    assert engine.get_allowed_transitions(pending, {"reason": "bad data"}) == frozenset({"draft", "archived"})
    assert engine.get_allowed_transitions(make_product(status=S.VERIFIED)) == frozenset({"published", "archived"})


def test_product_metadata():
    engine = create_product_engine()

    meta = engine.get_state_metadata(S.PENDING_VERIFICATION)
    assert meta.label == "Pending Verification"
    assert meta.color == "yellow"
    assert engine.get_state_metadata("published").icon == "fas fa-globe"
    assert list(engine.get_all_states()) == S.values()
    assert engine.initial_state == "draft"


def test_product_round_trips_with_history(engine):
    product = make_product()
    _move(engine, product, S.PENDING_VERIFICATION, reason="ready", actor_id=2)

    restored = type(product).from_dict(product.to_dict(include_history=True))

    assert restored.status == S.PENDING_VERIFICATION
    assert restored.market_price == product.market_price
    assert restored.links[0].url == product.links[0].url
    assert restored.state_history.last().reason == "ready"
    assert restored.state_history.last().actor_id == 2
