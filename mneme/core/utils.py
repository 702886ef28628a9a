"""Shared helpers: logging setup, model identifiers, elapsed-time formatting."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Rotate the daemon log at 1MB, keep 3 old files
LOG_MAX_BYTES = 1 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def configure_logging(
    *,
    daemon: bool,
    log_file: Path | None = None,
    level: int = logging.INFO,
    console: Console | None = None,
) -> logging.Handler:
    """Install the handler for this topology on the ``mneme`` logger.

    Attached runs log through Rich to the terminal. The background loop writes
    the same records to a rotating file so the user's transcript stays clean.
    """
    root = logging.getLogger("mneme")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handler: logging.Handler
    if daemon:
        if log_file is None:
            raise ValueError("daemon logging requires a log file")
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    else:
        handler = RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )

    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return handler


def parse_model_spec(spec: str | None) -> dict[str, str] | None:
    """Split "provider/model" into the runtime's model binding.

    "github-copilot/gpt-5.2" -> {"providerID": "github-copilot", "modelID": "gpt-5.2"}
    A bare model name keeps an empty provider. Empty input returns None.
    """
    if not spec or not spec.strip():
        return None
    spec = spec.strip()
    provider, sep, model = spec.partition("/")
    if not sep:
        return {"providerID": "", "modelID": spec}
    return {"providerID": provider.strip(), "modelID": model.strip()}


def format_elapsed(seconds: float) -> str:
    """Compact elapsed time: 42s, 3m05s, 1h02m."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
