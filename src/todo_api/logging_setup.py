from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

_INSTALLED_MARK = "_todo_api_handler"


class _AccessNoiseFilter(logging.Filter):
    """
    Keep the console readable:
    - allow all todo_api logs
    - uvicorn's own access log duplicates our request log, so drop it
    - the rest of uvicorn (startup, shutdown) at INFO+
    - other third-party loggers only at WARNING+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith("todo_api"):
            return True
        if name == "uvicorn.access":
            return False
        if name.startswith("uvicorn"):
            return record.levelno >= logging.INFO
        return record.levelno >= logging.WARNING


def setup_logging(
    level: Union[str, int] = logging.INFO,
    *,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Configure logging with:
    - Console handler on stderr, filtered for third-party noise
    - Optional file handler with everything at ``level`` and above

    Safe to call more than once: only handlers installed by a previous call
    are replaced.
    """
    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    for h in list(root.handlers):
        if getattr(h, _INSTALLED_MARK, False):
            root.removeHandler(h)
            h.close()

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(fmt)
    ch.addFilter(_AccessNoiseFilter())
    setattr(ch, _INSTALLED_MARK, True)
    root.addHandler(ch)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path), encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(fmt)
        setattr(fh, _INSTALLED_MARK, True)
        root.addHandler(fh)

    logging.captureWarnings(True)
