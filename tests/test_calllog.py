from llm_relay.calllog import CallLog
from llm_relay.models import LogKind


class TestCallLog:
    def test_record_assigns_increasing_ids_and_timestamps(self, clock):
        log = CallLog(clock=clock)
        first = log.record(LogKind.UPSTREAM, "chat.completions", "ok", duration_ms=12.345)
        clock.advance(10)
        second = log.record(LogKind.INTERNAL, "/api/health", 200, method="GET")

        assert second.id > first.id
        assert first.timestamp == clock.now - 10
        assert first.duration_ms == 12.3
        assert second.status == "200"

    def test_ring_evicts_oldest(self, clock):
        log = CallLog(capacity=3, clock=clock)
        for i in range(5):
            log.record(LogKind.INTERNAL, f"r{i}", "ok")
        assert len(log) == 3
        assert [e.route for e in log.query()] == ["r2", "r3", "r4"]

    def test_default_capacity(self):
        assert CallLog().capacity == 300

    def test_query_limit_returns_newest_last(self, clock):
        log = CallLog(clock=clock)
        for i in range(10):
            log.record(LogKind.INTERNAL, f"r{i}", "ok")
        assert [e.route for e in log.query(limit=3)] == ["r7", "r8", "r9"]
        assert log.query(limit=0) == []

    def test_query_filters_by_kind_and_since(self, clock):
        log = CallLog(clock=clock)
        log.record(LogKind.UPSTREAM, "old", "ok")
        clock.advance(1000)
        cutoff = clock.now
        log.record(LogKind.INTERNAL, "internal", "ok")
        log.record(LogKind.UPSTREAM, "new", "error", error="boom")

        assert [e.route for e in log.query(kind=LogKind.UPSTREAM)] == ["old", "new"]
        assert [e.route for e in log.query(since=cutoff)] == ["internal", "new"]
        assert [e.route for e in log.query(kind=LogKind.UPSTREAM, since=cutoff)] == ["new"]

    def test_clear(self, clock):
        log = CallLog(clock=clock)
        log.record(LogKind.INTERNAL, "x", "ok")
        log.clear()
        assert len(log) == 0
        assert log.query() == []

    def test_to_dict_drops_empty_fields(self, clock):
        log = CallLog(clock=clock)
        entry = log.record(
            LogKind.UPSTREAM,
            "responses",
            "error",
            method="POST",
            duration_ms=5,
            meta={"model": "o4-mini"},
            error="bad request",
        )
        data = entry.to_dict()
        assert data["kind"] == "upstream"
        assert data["durationMs"] == 5.0
        assert data["meta"] == {"model": "o4-mini"}
        assert "note" not in data
