"""Append-only JSON lines audit trail of agent turns."""

import asyncio
import json
import logging
from pathlib import Path
from typing import (
    Any,
    Dict,
)

from lifedesk.common import utcnow
from lifedesk.config import settings

logger = logging.getLogger(__name__)


class TurnLog:
    """Write one JSON object per turn to ``<DATA_DIR>/turns.jsonl``."""

    def __init__(self, path: Path | str | None = None, enabled: bool | None = None):
        self.path = Path(path) if path else Path(settings.DATA_DIR) / "turns.jsonl"
        self.enabled = settings.TURN_LOG_ENABLED if enabled is None else enabled

    def init(self) -> None:
        """
        Make sure the log file exists.
        This is called at application startup to prepare the environment.
        """
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.touch()

    async def record(self, thread_id: str, user_message: str, response: Dict[str, Any]) -> None:
        """Append a turn from a worker thread.  Failing to write is logged and otherwise ignored."""
        if not self.enabled:
            return
        entry = {
            "threadId": thread_id,
            "timestamp": utcnow().isoformat(),
            "userMessage": user_message,
            "response": response,
        }
        line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._append, line)

    def _append(self, line: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as exc:
            logger.warning("Could not write turn log %s: %s", self.path, exc)
