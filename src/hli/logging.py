"""loguru sinks and helpers shared by the indexer, the service and the CLI.

Every scan binds a fresh ``run_id`` so the JSON lines of one scan can be
grouped; ``log_event`` emits the structured per-file and per-scan records.
"""
from __future__ import annotations

import sys
import uuid
from typing import Any, Dict, Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<dim>{extra[run_id]:.8}</dim> | <cyan>{message}</cyan>"
)
NO_RUN = "-"
MAX_FIELD_LEN = 512


def setup_console(level: str = "INFO") -> None:
    logger.remove()
    logger.configure(extra={"run_id": NO_RUN})
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=CONSOLE_FORMAT,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )


def setup_json(path: str, level: str = "DEBUG") -> None:
    logger.add(path, level=level.upper(), serialize=True, enqueue=True)


def configure(level: str = "INFO", json_path: Optional[str] = None) -> None:
    """Human console sink plus optional JSON lines file."""
    setup_console(level)
    if json_path:
        setup_json(json_path)


def bind_run(run_id: Optional[str] = None) -> str:
    rid = run_id or uuid.uuid4().hex
    # Applies to every logger, including the extraction worker threads
    logger.configure(extra={"run_id": rid})
    return rid


def get_logger():
    return logger


def log_event(action: str, **fields: Any) -> None:
    """Structured record: ``action`` plus non-None fields as extras.

    ``msg`` and ``level`` are taken out of the fields; long strings are
    truncated so one unreadable file cannot bloat the JSON log.
    """
    clean: Dict[str, Any] = {}
    for k, v in fields.items():
        if v is None:
            continue
        if isinstance(v, str) and len(v) > MAX_FIELD_LEN and k != "msg":
            v = truncate(v, max_len=MAX_FIELD_LEN)
        clean[k] = v
    msg = clean.pop("msg", action)
    level = str(clean.pop("level", "INFO")).upper()
    logger.bind(action=action, **clean).log(level, msg)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Truncate a string to a max length and/or max number of lines."""
    if not text:
        return ""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])

    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text


def format_bytes(num: int) -> str:
    """Compact decimal size for log lines: 1.2 GB, 340.0 MB, 12 bytes."""
    if num >= 1_000_000_000:
        return f"{num / 1_000_000_000:.1f} GB"
    if num >= 1_000_000:
        return f"{num / 1_000_000:.1f} MB"
    if num >= 1_000:
        return f"{num / 1_000:.1f} KB"
    return f"{num} bytes"


def format_duration_ms(ms: int) -> str:
    """h:mm:ss or m:ss."""
    total = max(0, int(ms)) // 1000
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m}:{s:02d}"


__all__ = [
    "setup_console",
    "setup_json",
    "configure",
    "bind_run",
    "get_logger",
    "log_event",
    "truncate",
    "format_bytes",
    "format_duration_ms",
]
