"""
discovery.py — Model catalogue discovery for the chat relay.

Responsibilities:
  • Fetch the provider's model list (GET /v1/models) at most once per
    freshness window (24 h by default)
  • Keep only chat-capable ids and flag reasoning-family models, using
    the name heuristics below
  • Merge each fresh list into the CapabilityStore so learned
    temperature rejections survive a refresh
  • Serve the last known list (even stale) when the provider is unreachable

Dependencies: httpx (async HTTP), cachetools (freshness window)
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import httpx
from cachetools import TLRUCache

from .errors import MissingCredential, UpstreamUnavailable
from .models import Catalogue, LogKind, ModelCapability

if TYPE_CHECKING:
    from .calllog import CallLog
    from .capabilities import CapabilityStore

logger = logging.getLogger(__name__)

# ── Name heuristics ───────────────────────────────────────────────────────────
#
# The provider's model list carries ids only, so capabilities are inferred
# from naming conventions. These are heuristics: a new family that breaks
# the convention is a false negative until the patterns are updated.

_CHAT_PREFIX_RE = re.compile(r"^(?:gpt-|chatgpt-|o\d)")
_REASONING_RE = re.compile(r"^(?:o\d+|gpt-5)(?:$|[-.])")

_NON_CHAT_KEYWORDS: frozenset = frozenset(
    [
        "audio",
        "realtime",
        "transcribe",
        "tts",
        "image",
        "embedding",
        "moderation",
        "search",
        "instruct",
        "dall-e",
        "whisper",
    ]
)
# gpt-5-chat-* variants are served as plain chat models
_NON_REASONING_KEYWORDS: frozenset = frozenset(["-chat"])


def _bare_id(model_id: str) -> str:
    ml = (model_id or "").strip().lower()
    return ml.split("/", 1)[1] if ml.startswith("openai/") else ml


def is_reasoning_model(model_id: str) -> bool:
    """True for o-series (o1, o3, o4-mini, …) and gpt-5 family ids."""
    ml = _bare_id(model_id)
    if not _REASONING_RE.match(ml):
        return False
    return not any(k in ml for k in _NON_REASONING_KEYWORDS)


def is_chat_model(model_id: str) -> bool:
    """True for ids that look usable with chat completions."""
    ml = _bare_id(model_id)
    if not _CHAT_PREFIX_RE.match(ml):
        return False
    return not any(k in ml for k in _NON_CHAT_KEYWORDS)


def parse_model_list(data: Dict[str, Any]) -> List[ModelCapability]:
    """Parse an OpenAI-style ``{"data": [{"id": ...}]}`` body into sorted, deduplicated records."""
    seen: Dict[str, ModelCapability] = {}
    for item in data.get("data", []) if isinstance(data, dict) else []:
        mid = item.get("id", "") if isinstance(item, dict) else ""
        if not mid or mid in seen or not is_chat_model(mid):
            continue
        seen[mid] = ModelCapability(
            id=mid,
            supports_chat=True,
            supports_reasoning=is_reasoning_model(mid),
        )
    logger.debug("Parsed %d chat models from %d listed", len(seen), len(data.get("data", []) or []))
    return [seen[mid] for mid in sorted(seen)]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ══════════════════════════════════════════════════════════════════════════════
# CatalogueCache
# ══════════════════════════════════════════════════════════════════════════════

_CATALOGUE_KEY = "catalogue"


class CatalogueCache:
    """
    Lazily refreshed list of chat-capable models.

    Usage::

        catalogue = CatalogueCache(store, call_log, api_key=key)
        models = await catalogue.list()                   # cached while fresh
        models = await catalogue.list(force_refresh=True)  # always fetches
    """

    def __init__(
        self,
        store: "CapabilityStore",
        call_log: Optional["CallLog"] = None,
        *,
        api_key: str = "",
        models_url: str = "https://api.openai.com/v1/models",
        ttl_seconds: int = 24 * 3600,
        timeout: float = 10.0,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.call_log = call_log
        self._api_key = api_key
        self._models_url = models_url
        self._ttl_ms = int(ttl_seconds * 1000)
        self._timeout = timeout
        self._clock = clock
        # Holds the current catalogue only while fresh; expiry is fetchedAt + ttl
        self._fresh: TLRUCache = TLRUCache(maxsize=1, ttu=self._expires_at, timer=clock)
        self.seed()

    def _expires_at(self, _key: str, value: Catalogue, _now: int) -> int:
        return value.fetched_at + self._ttl_ms

    def seed(self) -> None:
        """Prime the freshness window from the store's persisted catalogue."""
        existing = self.store.catalogue()
        if existing is not None:
            self._fresh[_CATALOGUE_KEY] = existing

    def is_fresh(self) -> bool:
        return self._fresh.get(_CATALOGUE_KEY) is not None

    # ── Public interface ───────────────────────────────────────────────────────

    async def list(self, force_refresh: bool = False) -> List[ModelCapability]:
        if not force_refresh:
            cached: Optional[Catalogue] = self._fresh.get(_CATALOGUE_KEY)
            if cached is not None:
                return list(cached.models)

        start = time.monotonic()
        try:
            data = await self._fetch_json()
            records = parse_model_list(data)
            if not records:
                raise ValueError("Empty model list")
        except Exception as exc:
            self._log_fetch("error", start, error=str(exc))
            return self._fallback(exc)

        self._log_fetch("ok", start, meta={"count": len(records)})
        fetched_at = self._clock()
        result = self.store.merge_catalogue(records, fetched_at=fetched_at)
        if not result.ok:
            logger.warning("Catalogue refreshed but not persisted: %s", result.error)
        catalogue = self.store.catalogue()
        if catalogue is None:
            catalogue = Catalogue(fetched_at=fetched_at, models=records)
        self._fresh[_CATALOGUE_KEY] = catalogue
        logger.info("Model catalogue refreshed: %d chat models", len(catalogue.models))
        return list(catalogue.models)

    # ── Internal ───────────────────────────────────────────────────────────────

    def _fallback(self, exc: Exception) -> List[ModelCapability]:
        previous = self.store.catalogue()
        if previous is None:
            logger.error("Model catalogue fetch failed with no cached copy: %s", exc)
            raise UpstreamUnavailable(str(exc)) from exc

        age_h = (self._clock() - previous.fetched_at) / 3_600_000
        logger.warning(
            "Model catalogue fetch failed (%s); serving cached list from %.1fh ago",
            exc,
            age_h,
        )
        if self.call_log is not None:
            self.call_log.record(
                LogKind.INTERNAL,
                "models.list",
                "stale",
                note="served cached catalogue after fetch failure",
                meta={"fetchedAt": previous.fetched_at, "count": len(previous.models)},
            )
        return list(previous.models)

    async def _fetch_json(self) -> Dict[str, Any]:
        if not self._api_key:
            raise MissingCredential()
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.get(self._models_url, headers=headers)
            r.raise_for_status()
            return r.json()

    def _log_fetch(
        self,
        status: str,
        start: float,
        meta: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.call_log is None:
            return
        self.call_log.record(
            LogKind.UPSTREAM,
            "models.list",
            status,
            method="GET",
            duration_ms=(time.monotonic() - start) * 1000.0,
            meta=meta,
            error=error,
        )
