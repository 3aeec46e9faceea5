"""
calllog.py — Bounded in-memory record of upstream and internal calls.

A fixed-capacity ring (``collections.deque`` with ``maxlen``) evicts the
oldest entry on overflow. Entries are immutable once appended and are
kept for the process lifetime only.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Union

from .models import LogEntry, LogKind

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 300


def _now_ms() -> int:
    return int(time.time() * 1000)


class CallLog:
    """
    Chronological ring buffer of LogEntry records.

    Usage::

        log = CallLog()
        log.record(LogKind.UPSTREAM, "chat.completions", "ok", duration_ms=812.4)
        recent = log.query(limit=50, kind=LogKind.UPSTREAM)
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max(1, capacity))
        self._ids = itertools.count(1)
        self._clock = clock

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def record(
        self,
        kind: LogKind,
        route: str,
        status: Union[str, int],
        *,
        method: Optional[str] = None,
        duration_ms: Optional[float] = None,
        meta: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        error: Optional[str] = None,
    ) -> LogEntry:
        """Build an entry stamped with the next id and the current time, and append it."""
        entry = LogEntry(
            id=next(self._ids),
            timestamp=self._clock(),
            kind=kind,
            route=route,
            method=method,
            status=str(status),
            duration_ms=round(float(duration_ms), 1) if duration_ms is not None else None,
            meta=meta,
            note=note,
            error=error,
        )
        self.append(entry)
        if error:
            logger.debug("%s %s failed: %s", kind.value, route, error)
        return entry

    def query(
        self,
        limit: int = 100,
        kind: Optional[LogKind] = None,
        since: Optional[int] = None,
    ) -> List[LogEntry]:
        """Most recent ``limit`` entries matching the filters, newest last."""
        if limit <= 0:
            return []
        matched = [
            e
            for e in self._entries
            if (kind is None or e.kind == kind) and (since is None or e.timestamp >= since)
        ]
        return matched[-limit:]

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Call log cleared")
