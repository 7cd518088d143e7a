"""Logging for the quota service.

Quota events are JSON lines on the ``quota`` logger, echoed to the console
and appended to ``log_file``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("quota")

_LINE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(log_file: Optional[str], level: int = logging.INFO) -> None:
    """Attach console and log-file handlers to the ``quota`` logger once.

    Repeated calls (one per app startup) only adjust the level. With
    ``log_file`` unset, events go to the console alone.
    """
    logger.setLevel(level)
    if logger.handlers:
        return

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))

    formatter = logging.Formatter(_LINE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def log_event(
    event: str,
    *,
    identifier: Optional[str] = None,
    outcome: Optional[str] = None,
    level: int = logging.INFO,
    **extra: Any
) -> None:
    """Log a single quota event as a JSON line.

    Args:
        event: Event name (e.g. "rate_limit_check", "store_error").
        identifier: The caller identifier the event concerns.
        outcome: Short outcome label (e.g. "allowed", "denied", "fail_open").
        level: Logging level for the record.
        **extra: Additional JSON-serialisable fields.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }

    if identifier is not None:
        record["identifier"] = identifier

    if outcome is not None:
        record["outcome"] = outcome

    record.update(extra)

    logger.log(level, json.dumps(record, default=str))
