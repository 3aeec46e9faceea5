"""
quota.py — Upstream rate-limit telemetry for the chat relay.

Responsibilities:
  • Read the provider's x-ratelimit-* response headers (requests and tokens)
  • Keep the most recent value of each field, updating fields independently
  • Convert reset values (duration tokens or absolute timestamps) into a
    countdown that keeps ticking between observation and query
  • Report a JSON-ready snapshot for the /api/ratelimits endpoint

The snapshot is process-lifetime state, overwritten by every response.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .models import RateLimitBucket

logger = logging.getLogger(__name__)

BUCKETS = ("requests", "tokens")
FIELDS = ("remaining", "limit", "reset")

# litellm copies provider headers into _hidden_params with this prefix
_PROVIDER_PREFIX = "llm_provider-"

_DURATION_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_MS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000}


def _now_ms() -> int:
    return int(time.time() * 1000)


def header_name(field: str, bucket: str) -> str:
    return f"x-ratelimit-{field}-{bucket}"


# ══════════════════════════════════════════════════════════════════════════════
# Parsing helpers
# ══════════════════════════════════════════════════════════════════════════════


def parse_duration_ms(raw: str) -> Optional[int]:
    """Parse ``"500ms"``, ``"2s"``, ``"1m"`` or compound ``"6m0s"`` into milliseconds."""
    token = raw.strip().lower()
    if not _DURATION_RE.match(token):
        return None
    total = sum(float(num) * _UNIT_MS[unit] for num, unit in _DURATION_PART_RE.findall(token))
    return int(round(total))


def parse_timestamp_ms(raw: str) -> Optional[int]:
    """Parse an absolute timestamp (epoch s/ms, ISO-8601 or HTTP-date) into epoch ms."""
    token = raw.strip()
    if not token:
        return None
    try:
        num = float(token)
    except ValueError:
        pass
    else:
        # 13-digit values are epoch milliseconds, anything smaller epoch seconds
        return int(num) if num >= 1e12 else int(num * 1000)

    try:
        dt = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(token)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_reset_ms(raw: str, now_ms: int) -> Optional[int]:
    """Relative milliseconds until reset, or None when ``raw`` is unparseable."""
    duration = parse_duration_ms(raw)
    if duration is not None:
        return duration
    absolute = parse_timestamp_ms(raw)
    if absolute is None:
        return None
    return max(0, absolute - now_ms)


def _parse_int(raw: Any) -> Optional[int]:
    try:
        return int(float(str(raw).strip()))
    except (TypeError, ValueError):
        return None


def response_headers(raw: Any) -> Dict[str, str]:
    """Collect response headers from a litellm response object or a plain dict.

    Keys are lower-cased and litellm's ``llm_provider-`` prefix is removed,
    so callers can look up the provider's own header names.
    """
    candidates: list = []
    hidden: Any = None
    if isinstance(raw, dict):
        candidates.append(raw.get("headers"))
        candidates.append(raw.get("_response_headers"))
        hidden = raw.get("_hidden_params")
    else:
        candidates.append(getattr(raw, "_response_headers", None))
        hidden = getattr(raw, "_hidden_params", None)
    if isinstance(hidden, dict):
        candidates.append(hidden.get("additional_headers"))
        candidates.append(hidden.get("headers"))

    merged: Dict[str, str] = {}
    for source in candidates:
        if not source or not hasattr(source, "items"):
            continue
        for key, value in source.items():
            name = str(key).lower()
            if name.startswith(_PROVIDER_PREFIX):
                name = name[len(_PROVIDER_PREFIX):]
            if value is not None:
                merged.setdefault(name, str(value))
    return merged


# ══════════════════════════════════════════════════════════════════════════════
# RateLimitTracker
# ══════════════════════════════════════════════════════════════════════════════


class RateLimitTracker:
    """
    Most recent request/token quota telemetry seen on any upstream response.

    Usage::

        tracker = RateLimitTracker()
        tracker.observe(response_headers(raw))
        snapshot = tracker.snapshot()
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._buckets: Dict[str, RateLimitBucket] = {b: RateLimitBucket() for b in BUCKETS}
        self._observed: set = set()
        self.last_updated: Optional[int] = None

    def bucket(self, name: str) -> Optional[RateLimitBucket]:
        """The bucket's last values, or None if it has never been observed."""
        return self._buckets[name] if name in self._observed else None

    def observe(self, headers: Optional[Mapping[str, Any]], now: Optional[int] = None) -> bool:
        """Fold one response's headers into the snapshot.

        Only fields present in ``headers`` change. Returns True when at
        least one known header was present.
        """
        if not headers:
            return False
        now_ms = self._clock() if now is None else now
        lowered = {str(k).lower(): v for k, v in headers.items()}

        touched = False
        for name in BUCKETS:
            bucket = self._buckets[name]
            seen = False

            remaining = lowered.get(header_name("remaining", name))
            if remaining is not None:
                seen = True
                value = _parse_int(remaining)
                if value is not None:
                    bucket.remaining = value

            limit = lowered.get(header_name("limit", name))
            if limit is not None:
                seen = True
                value = _parse_int(limit)
                if value is not None:
                    bucket.limit = value

            reset = lowered.get(header_name("reset", name))
            if reset is not None:
                seen = True
                bucket.reset_raw = str(reset)
                reset_ms = parse_reset_ms(str(reset), now_ms)
                if reset_ms is None:
                    logger.debug("Unparseable %s reset value: %r", name, reset)
                else:
                    bucket.reset_ms = reset_ms
                    bucket.reset_observed_at = now_ms

            if seen:
                self._observed.add(name)
                touched = True

        if touched:
            self.last_updated = now_ms
        return touched

    def snapshot(self, now: Optional[int] = None) -> Dict[str, Any]:
        now_ms = self._clock() if now is None else now
        out: Dict[str, Any] = {"serverTime": now_ms, "lastUpdated": self.last_updated}
        for name in BUCKETS:
            bucket = self.bucket(name)
            out[name] = bucket.to_api(now_ms) if bucket is not None else None
        return out

    def reset(self) -> None:
        self._buckets = {b: RateLimitBucket() for b in BUCKETS}
        self._observed.clear()
        self.last_updated = None
