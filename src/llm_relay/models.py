"""
models.py — Pydantic schemas and runtime dataclasses for the chat relay.

Three layers:
  1. API request schemas (FastAPI input)
  2. Capability / catalogue records (persisted by the CapabilityStore)
  3. Runtime telemetry types (rate-limit buckets, call log entries, results)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ══════════════════════════════════════════════════════════════════════════════


class ReasoningEffort(str, Enum):
    OFF    = "off"
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class LogKind(str, Enum):
    UPSTREAM = "upstream"   # a call made to the provider
    INTERNAL = "internal"   # an inbound request or a local decision


class CallPath(str, Enum):
    REASONING = "reasoning"
    STANDARD  = "standard"


# ══════════════════════════════════════════════════════════════════════════════
# API Request schemas
# ══════════════════════════════════════════════════════════════════════════════


class ChatRequest(BaseModel):
    """Inbound chat request. Field names follow the browser client (camelCase)."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[Dict[str, Any]] = Field(default_factory=list)
    system_prompt: str = Field("", alias="systemPrompt")
    model: Optional[str] = None
    reasoning_effort: ReasoningEffort = Field(ReasoningEffort.MEDIUM, alias="reasoningEffort")

    @field_validator("messages", mode="before")
    @classmethod
    def normalise_messages(cls, v: Any) -> List[Dict[str, Any]]:
        # Entries without a role or content are dropped; content is sent as text.
        if not isinstance(v, list):
            return []
        out: List[Dict[str, Any]] = []
        for m in v:
            if not isinstance(m, dict):
                m = m.model_dump() if hasattr(m, "model_dump") else None
            if not m or not m.get("role") or m.get("content") is None:
                continue
            out.append({"role": str(m["role"]), "content": str(m["content"])})
        return out

    @field_validator("system_prompt", mode="before")
    @classmethod
    def default_system_prompt(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("reasoning_effort", mode="before")
    @classmethod
    def default_reasoning_effort(cls, v: Any) -> Any:
        return ReasoningEffort.MEDIUM if v is None else v


# ══════════════════════════════════════════════════════════════════════════════
# Capability / catalogue records
# ══════════════════════════════════════════════════════════════════════════════


@dataclass
class ModelCapability:
    """What the relay knows about one upstream model.

    ``supports_temperature`` is ``None`` until the upstream rejects the
    parameter, after which it stays ``False``.
    """
    id: str
    supports_chat: bool = True
    supports_reasoning: bool = False
    supports_temperature: Optional[bool] = None

    @property
    def accepts_temperature(self) -> bool:
        return self.supports_temperature is not False

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "supportsChat": self.supports_chat,
            "supportsReasoning": self.supports_reasoning,
        }
        if self.supports_temperature is not None:
            out["supportsTemperature"] = self.supports_temperature
        return out

    def to_record(self, listed: bool) -> Dict[str, Any]:
        return {
            "id": self.id,
            "supportsChat": self.supports_chat,
            "supportsReasoning": self.supports_reasoning,
            "supportsTemperature": self.supports_temperature,
            "listed": listed,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "ModelCapability":
        temp = rec.get("supportsTemperature")
        return cls(
            id=str(rec["id"]),
            supports_chat=bool(rec.get("supportsChat", True)),
            supports_reasoning=bool(rec.get("supportsReasoning", False)),
            supports_temperature=None if temp is None else bool(temp),
        )


@dataclass
class Catalogue:
    """Chat-capable models as of ``fetched_at`` (epoch ms), sorted by id."""
    fetched_at: int
    models: List[ModelCapability] = field(default_factory=list)

    def is_fresh(self, now_ms: int, ttl_ms: int) -> bool:
        return now_ms - self.fetched_at < ttl_ms

    @property
    def ids(self) -> List[str]:
        return [m.id for m in self.models]


@dataclass(frozen=True)
class PersistResult:
    """Outcome of a durable write. Callers may ignore it; it never raises."""
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "PersistResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, exc: BaseException) -> "PersistResult":
        return cls(ok=False, error=str(exc) or exc.__class__.__name__)


# ══════════════════════════════════════════════════════════════════════════════
# Runtime telemetry
# ══════════════════════════════════════════════════════════════════════════════


@dataclass
class RateLimitBucket:
    """Last observed quota telemetry for one bucket (requests or tokens)."""
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_raw: Optional[str] = None
    reset_ms: Optional[int] = None
    # epoch ms at which reset_ms was computed
    reset_observed_at: Optional[int] = None

    def countdown(self, now_ms: int) -> Optional[int]:
        if self.reset_ms is None:
            return None
        observed = now_ms if self.reset_observed_at is None else self.reset_observed_at
        return max(0, self.reset_ms - max(0, now_ms - observed))

    def to_api(self, now_ms: int) -> Dict[str, Any]:
        reset_ms = self.countdown(now_ms)
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "resetRaw": self.reset_raw,
            "resetMs": reset_ms,
            "resetAt": now_ms + reset_ms if reset_ms is not None else None,
        }


@dataclass(frozen=True)
class LogEntry:
    id: int
    timestamp: int                  # epoch ms
    kind: LogKind
    route: str
    status: str                     # "ok", "error", or an HTTP status code
    method: Optional[str] = None
    duration_ms: Optional[float] = None
    meta: Optional[Dict[str, Any]] = None
    note: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "route": self.route,
            "method": self.method,
            "status": self.status,
            "durationMs": self.duration_ms,
            "meta": self.meta,
            "note": self.note,
            "error": self.error,
        }
        return {k: v for k, v in out.items() if v is not None}


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_api(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class DispatchResult:
    reply: str
    usage: Optional[Usage]
    raw: Dict[str, Any]
    path: CallPath = CallPath.STANDARD
    model: str = ""

    def to_api(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "usage": self.usage.to_api() if self.usage else None,
            "raw": self.raw,
        }


def as_plain_dict(obj: Any) -> Dict[str, Any]:
    """Return a JSON-friendly ``dict`` for a provider response object."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "model_dump"):
        return dict(obj.model_dump())
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    try:
        return {k: v for k, v in vars(obj).items() if not k.startswith("_")}
    except TypeError:
        return {"value": str(obj)}
