"""
relay.py — Process-lifetime container for the chat relay.

Combines:
  • CapabilityStore    — durable per-model facts (capabilities.jsonl)
  • CatalogueCache     — lazily refreshed model list
  • RateLimitTracker   — latest quota telemetry
  • CallLog            — bounded record of calls and decisions
  • Dispatcher         — chat dispatch with temperature adaptation
  • PromptStore / ConversationArchive — file-backed UI storage

Each component is built once here and handed to request handlers; none
of them reads configuration or global state on its own.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .calllog import CallLog
from .capabilities import STORE_FILENAME, CapabilityStore
from .config import Settings, has_api_key, settings
from .conversations import ConversationArchive
from .discovery import CatalogueCache
from .dispatcher import Dispatcher
from .prompts import PromptStore
from .quota import RateLimitTracker

logger = logging.getLogger(__name__)


class Relay:
    """
    Wires the relay's components from a Settings object.

    Usage::

        relay = Relay()
        await relay.start()
        result = await relay.dispatcher.dispatch(request)
        await relay.stop()
    """

    def __init__(self, cfg: Optional[Settings] = None) -> None:
        self.settings = cfg or settings
        data_dir = Path(self.settings.data_dir)

        self.call_log = CallLog(capacity=self.settings.call_log_capacity)
        self.rate_limits = RateLimitTracker()
        self.store = CapabilityStore(data_dir / STORE_FILENAME)
        self.catalogue = CatalogueCache(
            self.store,
            self.call_log,
            api_key=self.settings.openai_api_key,
            models_url=self.settings.models_url,
            ttl_seconds=self.settings.catalogue_ttl_seconds,
            timeout=self.settings.discovery_timeout,
        )
        self.dispatcher = Dispatcher(
            self.store,
            self.rate_limits,
            self.call_log,
            api_key=self.settings.openai_api_key,
            api_base=self.settings.openai_api_base,
            default_model=self.settings.default_model,
            temperature=self.settings.default_temperature,
        )
        self.prompts = PromptStore(data_dir)
        self.conversations = ConversationArchive(data_dir, default_model=self.settings.default_model)
        self._started = False

    @property
    def has_api_key(self) -> bool:
        return has_api_key(self.settings)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Call once at application startup (FastAPI lifespan). Repeat calls are ignored."""
        if self._started:
            logger.debug("Relay already started")
            return
        os.environ.setdefault("LITELLM_LOG", "ERROR")
        self.prompts.ensure_files()
        self.store.load()
        self.catalogue.seed()
        if not self.has_api_key:
            logger.warning("OPENAI_API_KEY is not set. Set it in .env or environment variables.")
        self._started = True
        logger.info(
            "Relay ready: %d known models, catalogue %s",
            len(self.store),
            "fresh" if self.catalogue.is_fresh() else "stale or empty",
        )

    async def stop(self) -> None:
        self._started = False
        logger.info("Relay stopped, %d call log entries discarded", len(self.call_log))
