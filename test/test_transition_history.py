from datetime import timedelta

import pytest

from _helper import FIXED_NOW
from catalog.transition_history import TransitionHistory, TransitionRecord


def _record(i: int, **kwargs) -> TransitionRecord:
    return TransitionRecord.create(
        from_state="draft",
        to_state="published",
        timestamp=FIXED_NOW + timedelta(seconds=i),
        reason=f"step {i}",
        **kwargs,
    )


def test_empty_history():
    history = TransitionHistory(max_size=5)
    assert len(history) == 0
    assert history.last() is None
    assert history.all() == []


def test_append_keeps_call_order_even_with_equal_timestamps():
    history = TransitionHistory(max_size=5)
    first = TransitionRecord.create("draft", "pending_verification", FIXED_NOW, reason="a")
    second = TransitionRecord.create("pending_verification", "draft", FIXED_NOW, reason="b")
    history.append(first)
    history.append(second)

    assert history.all() == [first, second]
    assert history.last() is second


def test_oldest_record_is_evicted_past_capacity():
    history = TransitionHistory(max_size=3)
    for i in range(4):
        history.append(_record(i))

    assert len(history) == 3
    assert [r.reason for r in history] == ["step 1", "step 2", "step 3"]


def test_all_with_limit_returns_most_recent():
    history = TransitionHistory(max_size=10)
    for i in range(6):
        history.append(_record(i))

    assert [r.reason for r in history.all(limit=2)] == ["step 4", "step 5"]
    assert len(history.all(limit=100)) == 6
    assert history.all(limit=0) == []


def test_max_size_must_be_positive():
    with pytest.raises(ValueError):
        TransitionHistory(max_size=0)


def test_serialised_history_restores_records():
    history = TransitionHistory(max_size=4)
    history.append(_record(0, actor_id=9, context={"force": True}, entity_type="product", forced=True))
    history.append(_record(1))

    data = history.to_list()
    assert data[0]["from"] == "draft"
    assert data[0]["to"] == "published"
    assert data[0]["timestamp"] == FIXED_NOW.isoformat()

    restored = TransitionHistory.from_list(data, max_size=4)
    assert restored.all() == history.all()
    assert restored.last().reason == "step 1"
    assert restored.all()[0].context["force"] is True


def test_restoring_into_a_smaller_history_keeps_the_newest():
    data = [_record(i).to_dict() for i in range(5)]

    restored = TransitionHistory.from_list(data, max_size=2)

    assert [r.reason for r in restored] == ["step 3", "step 4"]
