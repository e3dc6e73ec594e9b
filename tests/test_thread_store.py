"""
Tests for the in-process thread store.

Run with:
$ pytest -q
"""

import pytest

from lifedesk.core.schema import (
    Message,
    Role,
)
from lifedesk.memory.thread_store import ThreadStore


def _msg(text: str) -> Message:
    return Message(role=Role.USER, text=text)


def test_unknown_thread_is_created_empty() -> None:
    """Referencing a new id yields an empty thread."""

    store = ThreadStore(max_messages=5)
    thread = store.get("fresh")
    assert thread.id == "fresh"
    assert thread.messages == []
    assert thread.learnings == []
    assert store.thread_ids() == ["fresh"]


def test_learnings_are_deduplicated() -> None:
    """Case and whitespace differences do not create a second learning."""

    store = ThreadStore(max_messages=5)
    assert store.add_learning("t", "Prefers  morning workouts") is True
    assert store.add_learning("t", "prefers morning WORKOUTS ") is False
    assert store.add_learning("t", "   ") is False
    assert [learning.text for learning in store.get("t").learnings] == ["Prefers morning workouts"]


def test_truncation_drops_oldest_messages_and_keeps_learnings() -> None:
    """Only the newest messages survive; learnings are unaffected."""

    store = ThreadStore(max_messages=3)
    store.add_learning("t", "Pays in EUR")
    for i in range(5):
        store.append("t", _msg(f"m{i}"))

    thread = store.get("t")
    assert [m.text for m in thread.messages] == ["m2", "m3", "m4"]
    assert [learning.text for learning in thread.learnings] == ["Pays in EUR"]


def test_get_returns_a_copy() -> None:
    """Mutating a returned thread does not change the store."""

    store = ThreadStore(max_messages=5)
    store.append("t", _msg("hello"))
    snapshot = store.get("t")
    snapshot.messages.append(_msg("injected"))
    snapshot.learnings.clear()

    assert [m.text for m in store.get("t").messages] == ["hello"]


def test_threads_are_isolated() -> None:
    """Messages and learnings of one thread never show up in another."""

    store = ThreadStore(max_messages=5)
    store.append("a", _msg("for a"))
    store.add_learning("a", "likes tea")

    other = store.get("b")
    assert other.messages == []
    assert other.learnings == []


def test_history_limit() -> None:
    """history returns the newest messages, oldest first."""

    store = ThreadStore(max_messages=10)
    for i in range(4):
        store.append("t", _msg(f"m{i}"))
    assert [m.text for m in store.history("t", 2)] == ["m2", "m3"]
    assert store.history("t", 0) == []
    assert len(store.history("t")) == 4


def test_lock_per_thread() -> None:
    """The same thread always yields the same lock; different threads do not share one."""

    store = ThreadStore(max_messages=5)
    assert store.lock("a") is store.lock("a")
    assert store.lock("a") is not store.lock("b")


def test_invalid_history_limit() -> None:
    """A store must keep at least one message."""

    with pytest.raises(ValueError):
        ThreadStore(max_messages=0)
