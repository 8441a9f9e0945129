"""Logging-related utilities.

No heavy dependencies here, so every other module
(and the CLI) can use it.
"""

from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def preview_names(names: Iterable[str], limit: int = 6) -> str:
    """Comma-joined preview of a name list, e.g. ``a, b, c ... (+4 more)``."""
    items = [str(n) for n in names]
    head = ", ".join(items[:limit])
    if len(items) > limit:
        return f"{head} ... (+{len(items) - limit} more)"
    return head


def setup_logging(verbosity: int = 0, *, log_file: Optional[str] = None) -> None:
    """Configure the root logger for command-line use.

    verbosity: 0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.
    Does nothing when the root logger already has handlers.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    logging.basicConfig(level=level, format=_FORMAT, handlers=handlers)
