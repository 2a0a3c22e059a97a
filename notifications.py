"""One-way engine events for the notification and reporting layer.

Events are written to the local ``engine_events`` outbox and, when
``NOTIFY_WEBHOOK_URL`` is configured, forwarded asynchronously with
retry/backoff. Publishing never raises: the mastery and planning flows do not
depend on delivery.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

import db
from engines.base import log_json

LOGGER = logging.getLogger(__name__)

MASTERY_ACHIEVED = "mastery_achieved"
SESSION_COMPLETED = "session_completed"
PLAN_ADVANCED = "plan_advanced"

EVENT_TYPES: dict[str, str] = {
    MASTERY_ACHIEVED: "Student passed the mastery gate for a concept.",
    SESSION_COMPLETED: "A learning session reached its terminal state.",
    PLAN_ADVANCED: "A learning plan cursor moved to the next concept.",
}


def validate_event(event_type: str, student_id: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate and normalise an event before it is stored."""

    if event_type not in EVENT_TYPES:
        allowed = ", ".join(sorted(EVENT_TYPES))
        raise ValueError(f"Unsupported event type '{event_type}'. Allowed: {allowed}")
    if not isinstance(student_id, str) or not student_id.strip():
        raise ValueError("student_id is required")
    if payload is not None and not isinstance(payload, dict):
        raise ValueError("payload must be a dict when provided")
    return {
        "type": event_type,
        "student_id": student_id.strip(),
        "payload": dict(payload or {}),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _forward_event_with_retry(
    event: Dict[str, Any],
    *,
    webhook_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    """Forward an event to the webhook with exponential backoff."""

    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                webhook_url,
                json=event,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 500:
                return
            LOGGER.warning(
                "Webhook responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward engine event (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            log_json(
                LOGGER,
                "notification_delivery_failed",
                {"type": event.get("type"), "student_id": event.get("student_id"), "attempts": attempt},
                logging.ERROR,
            )
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(event: Dict[str, Any], *, webhook_url: str, headers: Dict[str, str]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_event_with_retry(event, webhook_url=webhook_url, headers=headers)

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


def emit(event_type: str, student_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Persist the event locally and forward it when a webhook is configured."""

    event = validate_event(event_type, student_id, payload)
    db.insert_engine_event(event["type"], event["student_id"], event["payload"])

    webhook_url = os.getenv("NOTIFY_WEBHOOK_URL")
    if not webhook_url:
        return

    headers = {"Content-Type": "application/json"}
    auth = os.getenv("NOTIFY_WEBHOOK_AUTH")
    if auth:
        headers["Authorization"] = auth

    _schedule_forward(event, webhook_url=webhook_url, headers=headers)


def publish(event_type: str, student_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """Fire-and-forget wrapper around :func:`emit`; returns whether it was recorded."""

    try:
        emit(event_type, student_id, payload)
    except Exception as exc:  # delivery problems are reported, never propagated
        log_json(
            LOGGER,
            "notification_publish_failed",
            {
                "type": event_type,
                "student_id": student_id,
                "error": f"{exc.__class__.__name__}: {exc}",
            },
            logging.ERROR,
        )
        return False
    return True
