"""Tests for pipeline/aggregates.py -- atomic read-modify-write rollups."""

from __future__ import annotations

import asyncio

from pipeline.aggregates import AggregateEngine, increment


class TestAggregateEngine:

    def test_first_write_receives_none(self, store):
        engine = AggregateEngine(store)
        seen = []

        def reducer(current):
            seen.append(current)
            return {"count": 1}

        assert engine.update("impressions_2024-05-01", "impressions", reducer)
        assert seen == [None]
        assert engine.get("impressions_2024-05-01") == {"count": 1}

    def test_update_builds_on_previous_value(self, store):
        engine = AggregateEngine(store)

        engine.update("clicks", "engagement", increment("count"))
        engine.update("clicks", "engagement", increment("count", by=4))

        assert engine.get("clicks") == {"count": 5}

    def test_raising_reducer_returns_false_and_keeps_value(self, store):
        engine = AggregateEngine(store)
        engine.update("clicks", "engagement", increment("count"))

        def broken(current):
            raise KeyError("missing")

        assert engine.update("clicks", "engagement", broken) is False
        assert engine.get("clicks") == {"count": 1}

    def test_unserializable_result_returns_false(self, store):
        engine = AggregateEngine(store)
        assert engine.update("bad", "t", lambda cur: {"when": object()}) is False
        assert engine.get("bad") is None

    def test_missing_aggregate_is_none(self, store):
        assert AggregateEngine(store).get("never-written") is None

    def test_list_by_type(self, store):
        engine = AggregateEngine(store)
        engine.update("imp_1", "impressions", increment("count"))
        engine.update("imp_2", "impressions", increment("count"))
        engine.update("eng_1", "engagement", increment("count"))

        assert [a.id for a in engine.list_all("impressions")] == ["imp_1", "imp_2"]
        assert engine.get_record("eng_1").type == "engagement"

    async def test_interleaved_updates_are_not_lost(self, store):
        engine = AggregateEngine(store)

        async def bump(i):
            await asyncio.sleep(0.001 * (i % 5))
            return engine.update("impressions_total", "impressions", increment("count"))

        results = await asyncio.gather(*(bump(i) for i in range(50)))

        assert all(results)
        assert engine.get("impressions_total") == {"count": 50}
