"""In-process conversation threads: ordered history plus learnings, one writer per thread."""

import asyncio
import logging
from typing import (
    Dict,
    List,
    Optional,
)

from lifedesk.common import normalize_text
from lifedesk.config import settings
from lifedesk.core.schema import (
    Learning,
    Message,
    Thread,
)

logger = logging.getLogger(__name__)

DEFAULT_THREAD_ID = "default"


class ThreadStore:
    """
    Map thread ids to :class:`Thread` objects.

    Threads are created on first reference and live for the lifetime of the store.  Message
    history is bounded to *max_messages*; the oldest messages are dropped first while learnings
    are always kept.  Callers get copies, so one thread's data is never shared with another.

    Writers on the same thread should hold :meth:`lock` for the whole invocation.
    """

    def __init__(self, max_messages: Optional[int] = None):
        self.max_messages = max_messages if max_messages is not None else settings.HISTORY_LIMIT
        if self.max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self._threads: Dict[str, Thread] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _ensure(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            logger.debug("Creating thread '%s'", thread_id)
            thread = Thread(id=thread_id)
            self._threads[thread_id] = thread
        return thread

    def get(self, thread_id: str) -> Thread:
        """Return a copy of the thread, creating an empty one if *thread_id* is unseen."""
        thread = self._ensure(thread_id)
        return Thread(
            id=thread.id, messages=list(thread.messages), learnings=list(thread.learnings)
        )

    def append(self, thread_id: str, message: Message) -> None:
        """Append *message*, then drop the oldest messages beyond the history limit."""
        thread = self._ensure(thread_id)
        thread.messages.append(message)
        overflow = len(thread.messages) - self.max_messages
        if overflow > 0:
            del thread.messages[:overflow]
            logger.debug("Thread '%s' truncated by %d messages", thread_id, overflow)

    def add_learning(self, thread_id: str, text: str) -> bool:
        """
        Store a learning unless an equal one (after normalization) already exists.

        Returns
        -------
        bool
            True if the learning was added.
        """
        cleaned = " ".join(text.split())
        key = normalize_text(cleaned)
        if not key:
            return False
        thread = self._ensure(thread_id)
        if any(normalize_text(existing.text) == key for existing in thread.learnings):
            return False
        thread.learnings.append(Learning(text=cleaned))
        return True

    def history(self, thread_id: str, limit: Optional[int] = None) -> List[Message]:
        """The most recent *limit* messages (all of them when *limit* is None), oldest first."""
        messages = self._ensure(thread_id).messages
        if limit is None:
            return list(messages)
        return list(messages[-limit:]) if limit > 0 else []

    def lock(self, thread_id: str) -> asyncio.Lock:
        """The lock that serializes invocations on *thread_id*."""
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = self._locks[thread_id] = asyncio.Lock()
        return lock

    def thread_ids(self) -> List[str]:
        return list(self._threads)
