"""
prompts.py — Saved system-prompt templates and the default prompt.

Provides endpoints to:
  GET    /api/prompts            — list saved prompts, newest first
  POST   /api/prompts            — create or replace a prompt by name
  DELETE /api/prompts/{name}     — remove a prompt (no-op when absent)
  GET    /api/prompts/default    — current default system prompt (or null)
  POST   /api/prompts/default    — set the default system prompt

Storage is two JSON files in the data directory:
  prompts.json         {name: {name, content, updatedAt}}
  default_prompt.json  {name?, content, updatedAt} | null
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from .errors import InvalidInput, StorageFailure

logger = logging.getLogger(__name__)

PROMPTS_FILENAME = "prompts.json"
DEFAULT_PROMPT_FILENAME = "default_prompt.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(dt: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PromptStore:
    """
    File-backed prompt library.

    Usage::

        store = PromptStore(Path("data"))
        store.ensure_files()
        store.save("terse", "Answer in one sentence.")
        store.list()
    """

    def __init__(self, data_dir: Path | str, now: Callable[[], datetime] = _utc_now) -> None:
        self.data_dir = Path(data_dir)
        self.prompts_path = self.data_dir / PROMPTS_FILENAME
        self.default_path = self.data_dir / DEFAULT_PROMPT_FILENAME
        self._now = now

    def ensure_files(self) -> None:
        """Create missing storage files and reset any that hold invalid JSON."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._ensure(self.prompts_path, {})
        self._ensure(self.default_path, None)

    def _ensure(self, path: Path, empty: Any) -> None:
        if path.exists():
            try:
                raw = path.read_text(encoding="utf-8")
                if raw.strip():
                    json.loads(raw)
                return
            except (OSError, ValueError) as exc:
                logger.error("Failed to initialise %s, resetting: %s", path.name, exc)
        self._write(path, empty)

    # ── Prompts ────────────────────────────────────────────────────────────────

    def _read_prompts(self) -> Dict[str, Dict[str, Any]]:
        try:
            data = json.loads(self.prompts_path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def list(self) -> List[Dict[str, Any]]:
        prompts = [p for p in self._read_prompts().values() if isinstance(p, dict)]
        return sorted(prompts, key=lambda p: str(p.get("updatedAt", "")), reverse=True)

    def save(self, name: Any, content: Any) -> Dict[str, Any]:
        key = str(name or "").strip()
        if not key:
            raise InvalidInput("Name is required")
        if not isinstance(content, str):
            raise InvalidInput("Content must be a string")
        data = self._read_prompts()
        data[key] = {"name": key, "content": content, "updatedAt": iso_timestamp(self._now())}
        self._write(self.prompts_path, data)
        logger.info("Saved prompt %r", key)
        return data[key]

    def delete(self, name: str) -> bool:
        data = self._read_prompts()
        if name not in data:
            return False
        del data[name]
        self._write(self.prompts_path, data)
        logger.info("Deleted prompt %r", name)
        return True

    # ── Default prompt ─────────────────────────────────────────────────────────

    def get_default(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.default_path.read_text(encoding="utf-8")
            return json.loads(raw) if raw.strip() else None
        except (OSError, ValueError):
            return None

    def set_default(self, content: Any, name: Any = None) -> Dict[str, Any]:
        if not isinstance(content, str):
            raise InvalidInput("Content must be a string")
        record: Dict[str, Any] = {"content": content, "updatedAt": iso_timestamp(self._now())}
        if name:
            record = {"name": str(name).strip(), **record}
        self._write(self.default_path, record)
        return record

    # ── IO ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _write(path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise StorageFailure(f"Failed to write {path.name}: {exc}") from exc


# ══════════════════════════════════════════════════════════════════════════════
# Routes
# ══════════════════════════════════════════════════════════════════════════════

router = APIRouter(prefix="/api/prompts", tags=["Prompts"])


class SavePromptRequest(BaseModel):
    name: Optional[str] = None
    content: Any = None


class DefaultPromptRequest(BaseModel):
    name: Optional[str] = None
    content: Any = None


def get_prompt_store(request: Request) -> PromptStore:
    return request.app.state.relay.prompts


@router.get("")
async def list_prompts(store: PromptStore = Depends(get_prompt_store)) -> Dict[str, Any]:
    return {"prompts": store.list()}


@router.post("")
async def save_prompt(
    body: SavePromptRequest, store: PromptStore = Depends(get_prompt_store)
) -> Dict[str, Any]:
    return {"ok": True, "prompt": store.save(body.name, body.content)}


# Registered before /{name} so "default" is not captured as a prompt name
@router.get("/default")
async def get_default_prompt(store: PromptStore = Depends(get_prompt_store)) -> Dict[str, Any]:
    return {"defaultPrompt": store.get_default()}


@router.post("/default")
async def set_default_prompt(
    body: DefaultPromptRequest, store: PromptStore = Depends(get_prompt_store)
) -> Dict[str, Any]:
    return {"ok": True, "defaultPrompt": store.set_default(body.content, name=body.name)}


@router.delete("/{name}")
async def delete_prompt(name: str, store: PromptStore = Depends(get_prompt_store)) -> Dict[str, Any]:
    store.delete(name)
    return {"ok": True}
