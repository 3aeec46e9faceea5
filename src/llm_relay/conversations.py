"""
conversations.py — Conversation transcript archive.

  POST /api/conversations/save  — write one transcript snapshot to disk

Files are grouped by local date and never overwritten in place:

    conversations/2024-06-10/20240610-142501-k3f9x2ab.json
    conversations/2024-06-10/20240610-142630-k3f9x2ab.autosave.json
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import string
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from .errors import StorageFailure
from .prompts import iso_timestamp

logger = logging.getLogger(__name__)

CONVERSATIONS_DIRNAME = "conversations"
DEFAULT_MODEL = "gpt-4o-mini"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_conversation_id(length: int = 8) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class ConversationArchive:
    """
    Writes transcript snapshots under ``<data_dir>/conversations``.

    Usage::

        archive = ConversationArchive(Path("data"))
        rel_path = archive.save(transcript=[...], model="gpt-4o")
    """

    def __init__(
        self,
        data_dir: Path | str,
        default_model: str = DEFAULT_MODEL,
        now: Callable[[], datetime] = lambda: datetime.now().astimezone(),
    ) -> None:
        self.data_dir = Path(data_dir)
        self.root = self.data_dir / CONVERSATIONS_DIRNAME
        self.default_model = default_model
        self._now = now

    def save(
        self,
        transcript: Any = None,
        *,
        conversation_id: Any = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        autosave: bool = False,
    ) -> str:
        """Write a snapshot and return its path relative to the data directory."""
        cid = str(conversation_id or "").strip() or new_conversation_id()
        messages: List[Any] = transcript if isinstance(transcript, list) else []
        stamp = self._now()

        day_dir = self.root / stamp.strftime("%Y-%m-%d")
        suffix = ".autosave" if autosave else ""
        target = day_dir / f"{stamp.strftime('%Y%m%d-%H%M%S')}-{cid}{suffix}.json"

        record = {
            "id": cid,
            "savedAt": iso_timestamp(stamp),
            "autosave": bool(autosave),
            "model": model or self.default_model,
            "systemPrompt": str(system_prompt or ""),
            "transcript": messages,
            "stats": {"messages": len(messages)},
        }

        tmp = target.with_name(target.name + ".tmp")
        try:
            day_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
            os.replace(tmp, target)
        except OSError as exc:
            logger.error("Save conversation error: %s", exc)
            raise StorageFailure(f"Failed to save conversation: {exc}") from exc

        rel = target.relative_to(self.data_dir).as_posix()
        logger.debug("Saved conversation %s (%d messages)", rel, len(messages))
        return rel


# ══════════════════════════════════════════════════════════════════════════════
# Routes
# ══════════════════════════════════════════════════════════════════════════════

router = APIRouter(prefix="/api/conversations", tags=["Conversations"])


class SaveConversationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Any = Field(None, alias="conversationId")
    model: Optional[str] = None
    system_prompt: Optional[str] = Field("", alias="systemPrompt")
    transcript: Any = Field(default_factory=list)
    autosave: bool = False


def get_archive(request: Request) -> ConversationArchive:
    return request.app.state.relay.conversations


@router.post("/save")
async def save_conversation(
    body: SaveConversationRequest, archive: ConversationArchive = Depends(get_archive)
) -> Dict[str, Any]:
    path = archive.save(
        body.transcript,
        conversation_id=body.conversation_id,
        model=body.model,
        system_prompt=body.system_prompt,
        autosave=body.autosave,
    )
    return {"ok": True, "path": path}
