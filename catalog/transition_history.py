"""
Bounded, append-only ledger of committed transitions for one entity.
Backed by a fixed-capacity deque: appending past capacity drops the oldest record in O(1).
"""
import copy
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Iterator, Mapping

DEFAULT_MAX_HISTORY = 50


def _freeze(context: Mapping[str, Any] | None) -> Mapping[str, Any]:
    # Snapshot: later changes to the caller's dict must not leak into the record
    return MappingProxyType(copy.deepcopy(dict(context or {})))


@dataclass(frozen=True)
class TransitionRecord:
    from_state: str
    to_state: str
    timestamp: datetime
    reason: str | None = None
    actor_id: int | None = None
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    entity_type: str | None = None
    forced: bool = False

    @classmethod
    def create(
        cls,
        from_state: str,
        to_state: str,
        timestamp: datetime,
        reason: str | None = None,
        actor_id: int | None = None,
        context: Mapping[str, Any] | None = None,
        entity_type: str | None = None,
        forced: bool = False,
    ) -> "TransitionRecord":
        return cls(
            from_state=from_state,
            to_state=to_state,
            timestamp=timestamp,
            reason=reason,
            actor_id=actor_id,
            context=_freeze(context),
            entity_type=entity_type,
            forced=forced,
        )

    def to_dict(self) -> dict:
        return {
            "from": self.from_state,
            "to": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "actor_id": self.actor_id,
            "context": copy.deepcopy(dict(self.context)),
            "entity_type": self.entity_type,
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransitionRecord":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls.create(
            from_state=data["from"],
            to_state=data["to"],
            timestamp=timestamp,
            reason=data.get("reason"),
            actor_id=data.get("actor_id"),
            context=data.get("context") or {},
            entity_type=data.get("entity_type"),
            forced=bool(data.get("forced", False)),
        )


class TransitionHistory:
    def __init__(self, max_size: int = DEFAULT_MAX_HISTORY):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._records: deque[TransitionRecord] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._records.maxlen

    def append(self, record: TransitionRecord) -> None:
        self._records.append(record)

    def last(self) -> TransitionRecord | None:
        return self._records[-1] if self._records else None

    def all(self, limit: int | None = None) -> list[TransitionRecord]:
        """Records oldest first (most recent last). With limit, only the most recent `limit`."""
        records = list(self._records)
        if limit is not None:
            if limit <= 0:
                return []
            records = records[-limit:]
        return records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TransitionRecord]:
        return iter(list(self._records))

    def to_list(self) -> list[dict]:
        return [r.to_dict() for r in self._records]

    @classmethod
    def from_list(cls, data: list[Mapping[str, Any]] | None, max_size: int = DEFAULT_MAX_HISTORY) -> "TransitionHistory":
        history = cls(max_size=max_size)
        for item in data or []:
            history.append(TransitionRecord.from_dict(item))
        return history
