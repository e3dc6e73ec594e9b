"""Common utility functions for the project."""

import re
from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import Any

_WS_RE = re.compile(r"\s+")


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def normalize_text(text: str) -> str:
    """Case-fold *text* and collapse runs of whitespace, used as a dedup key."""
    return _WS_RE.sub(" ", text).strip().casefold()


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
