"""
Product entity. Owns its status, lifecycle timestamps and transition history;
exposes them to the workflow engine through the StatefulEntity accessors.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from catalog.config import settings
from catalog.transition_history import TransitionHistory


class ProductStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PUBLISHED = "published"
    ARCHIVED = "archived"

    @classmethod
    def values(cls) -> list[str]:
        return [s.value for s in cls]


# Lifecycle timestamp fields the engine may stamp
TIMESTAMP_FIELDS = frozenset({"published_at", "verified_at", "archived_at"})


def _new_history() -> TransitionHistory:
    return TransitionHistory(max_size=settings.max_state_history)


@dataclass
class MarketplaceLink:
    marketplace: str
    url: str
    active: bool = True
    id: int | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "marketplace": self.marketplace, "url": self.url, "active": self.active}


@dataclass(eq=False)
class Product:
    name: str
    slug: str
    id: int | None = None
    market_price: Decimal = Decimal("0.00")
    category_id: int | None = None
    image: str | None = None
    image_path: str | None = None
    description: str | None = None
    status: ProductStatus = ProductStatus.DRAFT
    published_at: datetime | None = None
    verified_at: datetime | None = None
    verified_by: int | None = None
    archived_at: datetime | None = None
    scheduled_at: datetime | None = None
    version: int = 0
    links: list[MarketplaceLink] = field(default_factory=list)
    state_history: TransitionHistory = field(default_factory=_new_history)

    # -- StatefulEntity accessors

    def get_current_state(self) -> ProductStatus:
        return self.status

    def set_current_state(self, state: Any) -> None:
        self.status = ProductStatus(state)

    def set_timestamp_field(self, field_name: str, value: datetime) -> None:
        if field_name not in TIMESTAMP_FIELDS:
            raise AttributeError(f"Product has no lifecycle timestamp field {field_name!r}")
        setattr(self, field_name, value)

    def get_transition_history(self) -> TransitionHistory:
        return self.state_history

    # -- business helpers

    def has_image(self) -> bool:
        return bool(self.image or self.image_path)

    def active_links(self) -> list[MarketplaceLink]:
        return [link for link in self.links if link.active]

    def is_published(self) -> bool:
        return self.status == ProductStatus.PUBLISHED

    def is_archived(self) -> bool:
        return self.status == ProductStatus.ARCHIVED

    def to_dict(self, include_history: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "market_price": str(self.market_price),
            "category_id": self.category_id,
            "image": self.image,
            "image_path": self.image_path,
            "description": self.description,
            "status": self.status.value,
            "published_at": _iso(self.published_at),
            "verified_at": _iso(self.verified_at),
            "verified_by": self.verified_by,
            "archived_at": _iso(self.archived_at),
            "scheduled_at": _iso(self.scheduled_at),
            "version": self.version,
            "links": [link.to_dict() for link in self.links],
        }
        if include_history:
            data["state_history"] = self.state_history.to_list()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Product":
        return cls(
            id=data.get("id"),
            name=data["name"],
            slug=data["slug"],
            market_price=Decimal(str(data.get("market_price") or "0.00")),
            category_id=data.get("category_id"),
            image=data.get("image"),
            image_path=data.get("image_path"),
            description=data.get("description"),
            status=ProductStatus(data.get("status") or ProductStatus.DRAFT),
            published_at=_parse(data.get("published_at")),
            verified_at=_parse(data.get("verified_at")),
            verified_by=data.get("verified_by"),
            archived_at=_parse(data.get("archived_at")),
            scheduled_at=_parse(data.get("scheduled_at")),
            version=data.get("version", 0),
            links=[
                MarketplaceLink(
                    id=link.get("id"),
                    marketplace=link["marketplace"],
                    url=link["url"],
                    active=link.get("active", True),
                )
                for link in data.get("links") or []
            ],
            state_history=TransitionHistory.from_list(
                data.get("state_history"), max_size=settings.max_state_history
            ),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
