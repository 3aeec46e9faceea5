from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from llm_relay.calllog import CallLog
from llm_relay.capabilities import CapabilityStore
from llm_relay.discovery import (
    CatalogueCache,
    is_chat_model,
    is_reasoning_model,
    parse_model_list,
)
from llm_relay.errors import MissingCredential, UpstreamUnavailable
from llm_relay.models import LogKind, ModelCapability

DAY_MS = 24 * 3600 * 1000

LISTING = {
    "object": "list",
    "data": [
        {"id": "gpt-4o-mini"},
        {"id": "o4-mini"},
        {"id": "gpt-4o"},
        {"id": "gpt-4o"},
        {"id": "text-embedding-3-small"},
        {"id": "whisper-1"},
        {"id": "gpt-4o-realtime-preview"},
        {"id": "gpt-3.5-turbo-instruct"},
        {"id": "dall-e-3"},
    ],
}


class TestHeuristics:
    @pytest.mark.parametrize("model_id", ["o1", "o3", "o4-mini", "o3-pro", "gpt-5", "gpt-5-mini", "openai/o3"])
    def test_reasoning_family(self, model_id):
        assert is_reasoning_model(model_id)

    @pytest.mark.parametrize("model_id", ["gpt-4o", "gpt-4.1-mini", "gpt-5-chat-latest", "omni-moderation-latest", ""])
    def test_not_reasoning(self, model_id):
        assert not is_reasoning_model(model_id)

    @pytest.mark.parametrize("model_id", ["gpt-4o-mini", "chatgpt-4o-latest", "o1", "gpt-5"])
    def test_chat_models(self, model_id):
        assert is_chat_model(model_id)

    @pytest.mark.parametrize(
        "model_id",
        [
            "gpt-4o-audio-preview",
            "gpt-4o-realtime-preview",
            "gpt-4o-transcribe",
            "gpt-4o-mini-tts",
            "gpt-image-1",
            "text-embedding-3-large",
            "omni-moderation-latest",
            "gpt-4o-search-preview",
            "gpt-3.5-turbo-instruct",
            "dall-e-3",
            "whisper-1",
            "babbage-002",
        ],
    )
    def test_non_chat_models(self, model_id):
        assert not is_chat_model(model_id)

    def test_parse_model_list_filters_sorts_and_dedupes(self):
        records = parse_model_list(LISTING)
        assert [r.id for r in records] == ["gpt-4o", "gpt-4o-mini", "o4-mini"]
        assert [r.supports_reasoning for r in records] == [False, False, True]

    def test_parse_model_list_tolerates_bad_payloads(self):
        assert parse_model_list({}) == []
        assert parse_model_list({"data": [{"name": "x"}, "gpt-4o"]}) == []


def _cache(tmp_path, clock, **kwargs):
    store = CapabilityStore(tmp_path / "capabilities.jsonl")
    log = CallLog(clock=clock)
    kwargs.setdefault("api_key", "sk-test")
    cache = CatalogueCache(store, log, clock=clock, **kwargs)
    return cache, store, log


class TestCatalogueCache:
    @pytest.mark.asyncio
    async def test_two_lists_within_window_fetch_once(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)) as fetch:
            first = await cache.list()
            clock.advance(DAY_MS - 1)
            second = await cache.list()
        assert fetch.await_count == 1
        assert [m.id for m in first] == [m.id for m in second]

    @pytest.mark.asyncio
    async def test_expired_window_refetches(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)) as fetch:
            await cache.list()
            clock.advance(DAY_MS)
            assert not cache.is_fresh()
            await cache.list()
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_force_refresh_always_fetches(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)) as fetch:
            await cache.list()
            await cache.list(force_refresh=True)
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_refresh_keeps_learned_temperature_rejection(self, tmp_path, clock):
        cache, store, _ = _cache(tmp_path, clock)
        store.record_temperature_unsupported("o4-mini")
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)):
            models = await cache.list(force_refresh=True)
        o4 = next(m for m in models if m.id == "o4-mini")
        assert o4.supports_temperature is False
        assert o4.to_api()["supportsTemperature"] is False

    @pytest.mark.asyncio
    async def test_fetch_is_logged_as_upstream(self, tmp_path, clock):
        cache, _, log = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)):
            await cache.list()
        entries = log.query(kind=LogKind.UPSTREAM)
        assert len(entries) == 1
        assert entries[0].route == "models.list"
        assert entries[0].method == "GET"
        assert entries[0].status == "ok"

    @pytest.mark.asyncio
    async def test_failure_without_cache_raises_unavailable(self, tmp_path, clock):
        cache, _, log = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(side_effect=httpx.ConnectError("down"))):
            with pytest.raises(UpstreamUnavailable):
                await cache.list()
        assert log.query()[-1].status == "error"

    @pytest.mark.asyncio
    async def test_failure_with_stale_cache_serves_it(self, tmp_path, clock):
        cache, store, log = _cache(tmp_path, clock)
        store.merge_catalogue([ModelCapability(id="gpt-4o")], fetched_at=clock.now - 3 * DAY_MS)
        cache.seed()
        assert not cache.is_fresh()

        with patch.object(cache, "_fetch_json", new=AsyncMock(side_effect=httpx.ConnectError("down"))):
            models = await cache.list()

        assert [m.id for m in models] == ["gpt-4o"]
        assert store.catalogue().fetched_at == clock.now - 3 * DAY_MS
        stale = log.query(kind=LogKind.INTERNAL)
        assert stale and stale[-1].status == "stale"

    @pytest.mark.asyncio
    async def test_refresh_serves_fetched_records_when_store_has_no_catalogue(self, tmp_path, clock):
        cache, store, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)) as fetch, patch.object(
            store, "catalogue", return_value=None
        ):
            models = await cache.list()
            again = await cache.list()
        assert [m.id for m in models] == ["gpt-4o", "gpt-4o-mini", "o4-mini"]
        assert [m.id for m in again] == [m.id for m in models]
        assert fetch.await_count == 1
        assert cache.is_fresh()

    @pytest.mark.asyncio
    async def test_empty_listing_counts_as_failure(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value={"data": []})):
            with pytest.raises(UpstreamUnavailable):
                await cache.list()

    @pytest.mark.asyncio
    async def test_persisted_catalogue_seeds_freshness(self, tmp_path, clock):
        cache, store, _ = _cache(tmp_path, clock)
        with patch.object(cache, "_fetch_json", new=AsyncMock(return_value=LISTING)):
            await cache.list()

        reloaded = CapabilityStore(store.path)
        reloaded.load()
        restarted = CatalogueCache(reloaded, api_key="sk-test", clock=clock)
        with patch.object(restarted, "_fetch_json", new=AsyncMock()) as fetch:
            models = await restarted.list()
        fetch.assert_not_awaited()
        assert len(models) == 3

    @pytest.mark.asyncio
    async def test_missing_key_raises_before_request(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock, api_key="")
        with pytest.raises(MissingCredential):
            await cache._fetch_json()

    @pytest.mark.asyncio
    async def test_fetch_json_sends_bearer_key(self, tmp_path, clock):
        cache, _, _ = _cache(tmp_path, clock, models_url="https://example.test/v1/models")
        response = MagicMock()
        response.json.return_value = LISTING
        client = MagicMock()
        client.get = AsyncMock(return_value=response)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with patch("llm_relay.discovery.httpx.AsyncClient", return_value=client):
            data = await cache._fetch_json()

        assert data == LISTING
        client.get.assert_awaited_once_with(
            "https://example.test/v1/models",
            headers={"Authorization": "Bearer sk-test"},
        )
        response.raise_for_status.assert_called_once()
