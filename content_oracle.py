"""Client for the external content oracle that writes session narrative.

The oracle is an OpenAI-style chat completion endpoint. Every call runs on a
worker thread with a bounded wait; unavailability, timeouts and malformed
replies all degrade to canned content so that session state never depends on
it.
"""

from __future__ import annotations

import json
import logging
import os
import re
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple

import requests

from engines.base import log_json
from engines.caching import TTLCache
from env_validation import get_env_bool

logger = logging.getLogger(__name__)

# --------- Endpoint from environment ---------
CONTENT_ORACLE_URL = os.getenv("CONTENT_ORACLE_URL", "")
CONTENT_ORACLE_MODEL = os.getenv("CONTENT_ORACLE_MODEL", "tutor-content")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'; using %s", name, raw, default)
        return default
    return value if value > 0 else default


CONTENT_ORACLE_TIMEOUT = _env_float("CONTENT_ORACLE_TIMEOUT", 3.0)

TEACHING = "teaching"
HINT = "hint"
STRUGGLING = "struggling"
CELEBRATING = "celebrating"
PLAN_NARRATIVE = "plan_narrative"
SCHEDULE_MESSAGE = "schedule_message"

# Canned content used whenever the oracle cannot be used. Keys double as the
# fields requested from the oracle.
FALLBACK_CONTENT: Dict[str, Dict[str, str]] = {
    TEACHING: {
        "explanation": "Let's learn something new today! This is an exciting concept.",
        "check_question": "Are you ready to try a practice question?",
        "check_answer": "Yes!",
    },
    HINT: {
        "hint": "Try breaking the problem into smaller steps!",
        "encouragement": "You've got this!",
    },
    STRUGGLING: {
        "message": "This is a tough one! Everyone gets stuck sometimes. Let's try a different way.",
        "simpler_explanation": "Let me break this down into smaller, easier steps for you.",
    },
    CELEBRATING: {
        "celebration": "Incredible! You've mastered this concept. I'm so proud of you!",
        "fun_fact": "Math is like a superpower: the more you practice, the stronger it gets!",
        "next_teaser": "Ready for the next adventure? Something awesome is coming up!",
    },
    PLAN_NARRATIVE: {
        "narrative": "Your learning plan is ready! We'll take it one concept at a time, and every step builds on the last.",
    },
    SCHEDULE_MESSAGE: {
        "message": "Keep going! Every session brings you closer to your goal.",
    },
}

_PROMPT_INTROS: Dict[str, str] = {
    TEACHING: "Introduce the concept below to a K-12 student in an age-appropriate way and end with one quick check-for-understanding question.",
    HINT: "Give the student a short hint (1-2 sentences) that nudges toward the right approach without revealing the answer.",
    STRUGGLING: "The student has answered several questions on this concept incorrectly. Acknowledge it warmly and re-explain with a simpler approach.",
    CELEBRATING: "The student just mastered the concept below. Celebrate briefly, share one fun fact and tease what comes next.",
    PLAN_NARRATIVE: "Write a short, encouraging overview (2-3 sentences) of the student's learning plan.",
    SCHEDULE_MESSAGE: "Write one encouraging sentence about the student's schedule status.",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)


@dataclass
class ContentResult:
    """Structured narrative for one content kind."""

    kind: str
    fields: Dict[str, str]
    source: str
    reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "source": self.source, **self.fields}


def fallback_content(kind: str, reason: Optional[str] = None) -> ContentResult:
    if kind not in FALLBACK_CONTENT:
        raise ValueError(f"Unknown content kind: {kind}")
    return ContentResult(kind, dict(FALLBACK_CONTENT[kind]), "fallback", reason)


def build_prompt(kind: str, context: Mapping[str, Any]) -> str:
    """Render a prompt asking the oracle for the fields of ``kind`` as JSON."""

    if kind not in FALLBACK_CONTENT:
        raise ValueError(f"Unknown content kind: {kind}")
    lines = [_PROMPT_INTROS[kind], "", "CONTEXT:"]
    for key in sorted(context):
        value = context[key]
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        lines.append(f"- {key}: {value}")
    schema = {name: "..." for name in FALLBACK_CONTENT[kind]}
    lines.extend(["", "OUTPUT FORMAT (JSON):", json.dumps(schema), "", "Respond ONLY with valid JSON."])
    return "\n".join(lines)


def parse_structured(kind: str, raw: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse an oracle reply; ``None`` when it is missing or not a JSON object.

    Missing or empty fields are filled from the canned content.
    """

    if raw is None:
        return None
    cleaned = _FENCE_RE.sub("", str(raw)).strip()
    if not cleaned:
        return None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    if not isinstance(parsed, dict):
        return None
    fields: Dict[str, str] = {}
    for name, default in FALLBACK_CONTENT[kind].items():
        value = parsed.get(name)
        fields[name] = str(value).strip() if isinstance(value, (str, int, float)) and str(value).strip() else default
    return fields


class ContentOracle:
    """Bounded-wait, fallback-safe access to the content oracle.

    Parameters
    ----------
    url:
        Chat completion endpoint. When empty the oracle is disabled and every
        request returns canned content immediately.
    timeout:
        Maximum seconds to wait for a reply before falling back.
    transport:
        Optional callable replacing the HTTP call; receives the prompt context
        and returns the raw reply text (or ``None``).
    cache:
        TTL cache holding prefetched futures. A fresh one is created when
        omitted.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        enabled: Optional[bool] = None,
        transport: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None,
        cache: Optional[TTLCache] = None,
        max_workers: int = 4,
    ) -> None:
        self.url = CONTENT_ORACLE_URL if url is None else url
        self.model = model or CONTENT_ORACLE_MODEL
        self.timeout = float(timeout if timeout is not None else CONTENT_ORACLE_TIMEOUT)
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        default_enabled = bool(self.url) or transport is not None
        if enabled is None:
            enabled = get_env_bool("CONTENT_ORACLE_ENABLED", default_enabled) and default_enabled
        self.enabled = bool(enabled)
        self._transport = transport or self._post
        self.cache = cache or TTLCache(ttl_seconds=60.0)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="content-oracle")

    # ----- raw collaborator contract -----------------------------------
    def generate(self, prompt_context: Dict[str, Any]) -> Optional[str]:
        """Return the oracle's raw text for ``prompt_context`` or ``None``."""

        return self._transport(prompt_context)

    def _post(self, prompt_context: Dict[str, Any]) -> Optional[str]:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You write short, friendly tutoring content for K-12 students."},
                {"role": "user", "content": prompt_context["prompt"]},
            ],
            "temperature": 0.7,
            "max_tokens": int(prompt_context.get("max_tokens", 400)),
        }
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            return None
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        message = choices[0].get("message")
        if isinstance(message, dict) and message.get("content") is not None:
            return str(message["content"])
        text = choices[0].get("text")
        return None if text is None else str(text)

    # ----- structured content ------------------------------------------
    def _submit(self, kind: str, context: Mapping[str, Any]) -> Future:
        prompt_context = {"kind": kind, "prompt": build_prompt(kind, context), **dict(context)}
        return self._executor.submit(self.generate, prompt_context)

    def _resolve(self, kind: str, future: Future, wait: float) -> ContentResult:
        try:
            raw = future.result(timeout=wait)
        except FutureTimeoutError:
            future.cancel()
            return self._fallback(kind, "timeout")
        except requests.RequestException as exc:
            return self._fallback(kind, f"http_error: {exc}")
        except Exception as exc:  # oracle failures must not reach the session contract
            return self._fallback(kind, f"error: {exc.__class__.__name__}: {exc}")
        if raw is None:
            return self._fallback(kind, "unavailable")
        fields = parse_structured(kind, raw)
        if fields is None:
            return self._fallback(kind, "malformed_response")
        return ContentResult(kind, fields, "oracle")

    def _fallback(self, kind: str, reason: str) -> ContentResult:
        log_json(logger, "content_oracle_fallback", {"kind": kind, "reason": reason}, logging.WARNING)
        return fallback_content(kind, reason)

    def content_for(self, kind: str, context: Mapping[str, Any]) -> ContentResult:
        """Generate content for ``kind`` with a bounded wait."""

        if kind not in FALLBACK_CONTENT:
            raise ValueError(f"Unknown content kind: {kind}")
        if not self.enabled:
            return fallback_content(kind, "disabled")
        return self._resolve(kind, self._submit(kind, context), self.timeout)

    def prefetch(self, key: Hashable, kind: str, context: Mapping[str, Any]) -> None:
        """Start generating content in the background and park it in the cache."""

        if not self.enabled:
            return
        self.cache.sweep()
        self.cache.set((key, kind), self._submit(kind, context))

    def take_prefetched(
        self, key: Hashable, kind: str, context: Optional[Mapping[str, Any]] = None
    ) -> ContentResult:
        """Await a prefetched result; generates live when nothing fresh is cached."""

        future = self.cache.pop((key, kind))
        if future is None:
            return self.content_for(kind, context or {})
        return self._resolve(kind, future, self.timeout)

    def shutdown(self) -> None:
        self.cache.clear()
        self._executor.shutdown(wait=False)


__all__ = [
    "CELEBRATING",
    "ContentOracle",
    "ContentResult",
    "FALLBACK_CONTENT",
    "HINT",
    "PLAN_NARRATIVE",
    "SCHEDULE_MESSAGE",
    "STRUGGLING",
    "TEACHING",
    "build_prompt",
    "fallback_content",
    "parse_structured",
]
