import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def log_json(logger: logging.Logger, event: str, payload: Dict[str, Any], level: int = logging.INFO) -> None:
    """Emit a single-line structured JSON log record."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    logger.log(level, message)
