"""loguru setup for tagcache: console sink, JSON lines file, run id, structured events."""
from __future__ import annotations

import sys
import uuid
from typing import Any, Dict, Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[action]}</cyan> | {message}"
)
TRUNCATED = "... (truncated)"

_configured = False


def setup_console(level: str = "INFO") -> None:
    """Replace every sink with a single stderr sink at `level`."""
    global _configured
    logger.remove()
    logger.configure(extra={"action": "-"})
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=CONSOLE_FORMAT,
        enqueue=True,
        backtrace=False,
        diagnose=False,
    )
    _configured = True


def setup_json(path: str, level: str = "DEBUG", rotation: Optional[str] = "10 MB") -> None:
    logger.add(path, level=level.upper(), serialize=True, enqueue=True, rotation=rotation)


def configure(level: str = "INFO", json_path: Optional[str] = None) -> None:
    setup_console(level)
    if json_path:
        setup_json(json_path)


def is_configured() -> bool:
    return _configured


def bind_run(run_id: Optional[str] = None) -> str:
    """Tag every later record, from any thread, with a run id."""
    rid = run_id or uuid.uuid4().hex[:12]
    logger.configure(extra={"action": "-", "run_id": rid})
    return rid


def get_logger():
    return logger


def log_event(action: str, **fields: Any) -> None:
    """Emit one structured record; `msg` and `level` may ride along in `fields`."""
    extra: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    message = extra.pop("msg", action)
    level = str(extra.pop("level", "INFO")).upper()
    logger.bind(action=action, **extra).log(level, message)


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Keep the tail of a long decoder message: last `max_lines` lines, last `max_len` chars."""
    if not text:
        return ""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join([TRUNCATED, *lines[-max_lines:]])
    if len(text) > max_len:
        text = f"{TRUNCATED}\n{text[-max_len:]}"
    return text
