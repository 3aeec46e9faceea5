"""
capabilities.py — Durable per-model capability facts.

The store keeps one ModelCapability per model id plus the ids and fetch
time of the last merged catalogue. Every mutation is written through to a
JSON Lines file before returning:

    {"fetchedAt": 1718000000000}
    {"id": "gpt-4o-mini", "supportsChat": true, "supportsReasoning": false, "supportsTemperature": null, "listed": true}
    {"id": "o4-mini", "supportsChat": true, "supportsReasoning": true, "supportsTemperature": false, "listed": true}

Writes go to a temp file that is renamed over the original. A failed write
is logged and returned as a PersistResult; it never raises.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .discovery import is_reasoning_model
from .models import Catalogue, ModelCapability, PersistResult

logger = logging.getLogger(__name__)

STORE_FILENAME = "capabilities.jsonl"


class CapabilityStore:
    """
    Model id → ModelCapability, surviving restarts.

    Usage::

        store = CapabilityStore(Path("data/capabilities.jsonl"))
        store.load()
        if not store.get("o4-mini").accepts_temperature:
            ...
        store.record_temperature_unsupported("o4-mini")
    """

    def __init__(self, path: Optional[Path | str] = None) -> None:
        self.path: Optional[Path] = Path(path) if path is not None else None
        self._entries: Dict[str, ModelCapability] = {}
        self._listed: List[str] = []
        self._fetched_at: Optional[int] = None

    # ── Reads ──────────────────────────────────────────────────────────────────

    def get(self, model_id: str) -> ModelCapability:
        """Known capability for ``model_id``, or an optimistic default for unknown ids."""
        known = self._entries.get(model_id)
        if known is not None:
            return known
        return ModelCapability(
            id=model_id,
            supports_chat=True,
            supports_reasoning=is_reasoning_model(model_id),
            supports_temperature=None,
        )

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def catalogue(self) -> Optional[Catalogue]:
        """The last merged catalogue with current capability facts, if any."""
        if self._fetched_at is None:
            return None
        models = [self._entries[mid] for mid in self._listed if mid in self._entries]
        return Catalogue(fetched_at=self._fetched_at, models=models)

    # ── Mutations ──────────────────────────────────────────────────────────────

    def record_temperature_unsupported(self, model_id: str) -> PersistResult:
        entry = self._entries.get(model_id)
        if entry is None:
            entry = self.get(model_id)
            self._entries[model_id] = entry
        entry.supports_temperature = False
        logger.info("Recorded temperature unsupported for %s", model_id)
        return self.save()

    def merge_catalogue(
        self, fresh: Iterable[ModelCapability], fetched_at: int
    ) -> PersistResult:
        """Replace the model set with ``fresh``, carrying learned temperature rejections forward.

        Ids absent from ``fresh`` are dropped.
        """
        merged: Dict[str, ModelCapability] = {}
        for cap in fresh:
            previous = self._entries.get(cap.id)
            supports_temperature = cap.supports_temperature
            if previous is not None and previous.supports_temperature is False:
                supports_temperature = False
            merged[cap.id] = ModelCapability(
                id=cap.id,
                supports_chat=cap.supports_chat,
                supports_reasoning=cap.supports_reasoning,
                supports_temperature=supports_temperature,
            )

        dropped = set(self._entries) - set(merged)
        if dropped:
            logger.debug("Dropping %d models absent from catalogue: %s", len(dropped), sorted(dropped))

        self._entries = merged
        self._listed = sorted(merged)
        self._fetched_at = int(fetched_at)
        return self.save()

    # ── Persistence ────────────────────────────────────────────────────────────

    def load(self) -> bool:
        """Read persisted state. Missing or corrupt files leave the store empty."""
        if self.path is None or not self.path.exists():
            return False
        entries: Dict[str, ModelCapability] = {}
        listed: List[str] = []
        fetched_at: Optional[int] = None
        try:
            with open(self.path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    rec = json.loads(line)
                    if "id" not in rec:
                        if rec.get("fetchedAt") is not None:
                            fetched_at = int(rec["fetchedAt"])
                        continue
                    cap = ModelCapability.from_record(rec)
                    entries[cap.id] = cap
                    if rec.get("listed"):
                        listed.append(cap.id)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to load capability store %s: %s", self.path, exc)
            return False

        self._entries = entries
        self._listed = sorted(set(listed))
        self._fetched_at = fetched_at
        logger.info(
            "Loaded %d model capabilities (%d listed) from %s",
            len(entries),
            len(self._listed),
            self.path,
        )
        return True

    def save(self) -> PersistResult:
        if self.path is None:
            return PersistResult.success()
        listed = set(self._listed)
        lines = [json.dumps({"fetchedAt": self._fetched_at})]
        for mid in sorted(self._entries):
            lines.append(json.dumps(self._entries[mid].to_record(listed=mid in listed)))
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("Failed to persist capability store %s: %s", self.path, exc)
            return PersistResult.failure(exc)
        return PersistResult.success()
