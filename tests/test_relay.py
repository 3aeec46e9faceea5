"""
test_relay.py — Relay wiring and lifecycle.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from llm_relay.config import Settings
from llm_relay.relay import Relay


class TestRelayLifecycle(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        cfg = Settings()
        cfg.data_dir = self._tmp.name
        cfg.openai_api_key = "sk-test"
        self.relay = Relay(cfg)

    async def test_start_prepares_storage_files(self):
        await self.relay.start()
        self.assertTrue((Path(self._tmp.name) / "prompts.json").exists())
        self.assertTrue(self.relay.has_api_key)

    async def test_second_start_is_ignored(self):
        with patch.object(self.relay.store, "load", wraps=self.relay.store.load) as load:
            await self.relay.start()
            await self.relay.start()
        load.assert_called_once()

    async def test_start_after_stop_loads_again(self):
        with patch.object(self.relay.store, "load", wraps=self.relay.store.load) as load:
            await self.relay.start()
            await self.relay.stop()
            await self.relay.start()
        self.assertEqual(load.call_count, 2)
