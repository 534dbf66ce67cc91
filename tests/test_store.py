"""Tests for core/data/store.py -- the transactional event store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from core.data.store import Store, StoreError


class TestEvents:

    def test_put_returns_assigned_id(self, store, make_event):
        event = make_event()
        assert store.put(event) == event.id
        assert store.count_events() == 1

    def test_put_many_returns_ids_in_order(self, store, make_event):
        events = [make_event() for _ in range(5)]
        assert store.put_many(events) == [e.id for e in events]

    def test_put_many_is_all_or_nothing(self, store, make_event):
        store.db.execute(
            """CREATE TRIGGER reject_boom BEFORE INSERT ON events
               WHEN NEW.event_type = 'boom'
               BEGIN SELECT RAISE(ABORT, 'rejected'); END"""
        )

        with pytest.raises(StoreError):
            store.put_many([make_event(), make_event(), make_event(event_type="boom")])

        assert store.count_events() == 0

    def test_put_many_skips_ids_already_stored(self, store, make_event):
        first = make_event(metadata={"adId": "original"})
        store.put(first)
        resent = first.model_copy(update={"metadata": {"adId": "changed"}})
        fresh = [make_event(), make_event()]

        ids = store.put_many([resent, *fresh])

        assert ids == [first.id] + [e.id for e in fresh]
        assert store.count_events() == 3
        assert store.get_events([first.id])[0].metadata == {"adId": "original"}

    def test_duplicate_within_one_call_is_stored_once(self, store, make_event):
        event = make_event()
        store.put_many([event, event])
        assert store.count_events() == 1

    def test_get_events_round_trips_and_keeps_order(self, store, make_event):
        events = [make_event(metadata={"adId": f"a{i}", "count": i}) for i in range(3)]
        store.put_many(events)

        loaded = store.get_events([events[2].id, "missing", events[0].id])

        assert loaded == [events[2], events[0]]

    def test_count_by_type(self, store, make_event):
        store.put_many([make_event(event_type="ad_click"), make_event(), make_event()])
        assert store.count_events("ad_click") == 1
        assert store.count_events("ad_impression") == 2

    def test_delete_events(self, store, make_event):
        events = [make_event() for _ in range(4)]
        store.put_many(events)

        assert store.delete_events([events[0].id, events[1].id, "missing"]) == 2
        assert store.count_events() == 2

    def test_indexes_exist(self, store):
        names = {
            row["name"]
            for row in store.db.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        assert {"idx_events_time", "idx_events_type", "idx_batches_status"} <= names


class TestBatches:

    def test_create_batch_claims_events(self, store, make_event):
        events = [make_event() for _ in range(3)]
        store.put_many(events)

        batch = store.create_batch([e.id for e in events[:2]])

        assert batch.status == "pending"
        assert batch.attempts == 0
        assert store.count_unbatched_events() == 1
        assert store.oldest_unbatched_event_ids(10) == [events[2].id]
        assert store.has_outstanding_batch()

    def test_event_cannot_be_claimed_twice(self, store, make_event):
        event = make_event()
        store.put(event)
        store.create_batch([event.id])

        with pytest.raises(StoreError):
            store.create_batch([event.id])

        assert len(store.list_batches()) == 1

    def test_update_and_get_batch(self, store, make_event):
        event = make_event()
        store.put(event)
        batch = store.create_batch([event.id])

        batch.status = "pending"
        batch.attempts = 2
        batch.last_error = "boom"
        store.update_batch(batch)

        loaded = store.get_batch(batch.batch_id)
        assert loaded.attempts == 2
        assert loaded.last_error == "boom"
        assert loaded.event_ids == [event.id]

    def test_update_unknown_batch_raises(self, store):
        from core.models.batches import Batch

        with pytest.raises(StoreError):
            store.update_batch(Batch(event_ids=["x"]))

    def test_complete_batch_deletes_events_and_releases_claims(self, store, make_event):
        events = [make_event() for _ in range(3)]
        store.put_many(events)
        batch = store.create_batch([e.id for e in events])

        batch.status = "complete"
        batch.sent_at = datetime.now(timezone.utc)
        assert store.complete_batch(batch) == 3

        assert store.count_events() == 0
        assert store.get_batch(batch.batch_id).status == "complete"
        assert store.get_batch(batch.batch_id).event_ids == [e.id for e in events]
        assert not store.has_outstanding_batch()

    def test_complete_batch_rolls_back_on_failure(self, store, make_event, monkeypatch):
        events = [make_event() for _ in range(2)]
        store.put_many(events)
        batch = store.create_batch([e.id for e in events])
        batch.status = "sending"
        store.update_batch(batch)

        def boom(ids):
            raise StoreError("disk I/O error")

        monkeypatch.setattr(store, "delete_events", boom)
        batch.status = "complete"
        with pytest.raises(StoreError):
            store.complete_batch(batch)

        assert store.get_batch(batch.batch_id).status == "sending"
        assert store.count_events() == 2

    def test_delete_batch_releases_claims(self, store, make_event):
        event = make_event()
        store.put(event)
        batch = store.create_batch([event.id])

        assert store.delete_batch(batch.batch_id)
        assert not store.delete_batch(batch.batch_id)
        assert store.count_unbatched_events() == 1

    def test_recover_in_flight(self, store, make_event):
        event = make_event()
        store.put(event)
        batch = store.create_batch([event.id])
        batch.status = "sending"
        batch.attempts = 1
        store.update_batch(batch)

        assert store.recover_in_flight() == 1

        loaded = store.get_batch(batch.batch_id)
        assert loaded.status == "pending"
        assert loaded.attempts == 1

    def test_list_batches_filters_by_status(self, store, make_event):
        events = [make_event() for _ in range(2)]
        store.put_many(events)
        first = store.create_batch([events[0].id])
        first.status = "failed"
        store.update_batch(first)
        second = store.create_batch([events[1].id])

        assert [b.batch_id for b in store.list_batches()] == [first.batch_id, second.batch_id]
        assert [b.batch_id for b in store.list_batches(status="failed")] == [first.batch_id]

    def test_list_batches_limit(self, store, make_event):
        events = [make_event() for _ in range(2)]
        store.put_many(events)
        for event in events:
            batch = store.create_batch([event.id])
            batch.status = "failed"
            store.update_batch(batch)

        assert len(store.list_batches(limit=1)) == 1
        assert store.list_batches(limit=0) == []

    def test_requeue_only_failed_batches(self, store, make_event):
        event = make_event()
        store.put(event)
        batch = store.create_batch([event.id])

        assert store.requeue_batch(batch.batch_id) is None

        batch.status = "failed"
        batch.attempts = 3
        batch.last_error = "503"
        store.update_batch(batch)

        requeued = store.requeue_batch(batch.batch_id)
        assert requeued.status == "pending"
        assert requeued.attempts == 0
        assert store.get_batch(batch.batch_id).last_error is None

    def test_delete_completed_before(self, store, make_event):
        now = datetime.now(timezone.utc)
        events = [make_event() for _ in range(2)]
        store.put_many(events)

        old = store.create_batch([events[0].id])
        old.status = "complete"
        old.sent_at = now - timedelta(days=100)
        store.complete_batch(old)

        recent = store.create_batch([events[1].id])
        recent.status = "complete"
        recent.sent_at = now - timedelta(days=1)
        store.complete_batch(recent)

        assert store.delete_completed_before(now - timedelta(days=90)) == 1
        assert store.get_batch(old.batch_id) is None
        assert store.get_batch(recent.batch_id) is not None


class TestAggregates:

    def test_first_update_sees_none(self, store):
        seen = []

        def reducer(current):
            seen.append(current)
            return {"count": 1}

        assert store.update_aggregate("impressions_2024-05-01", "impressions", reducer) == {"count": 1}
        assert seen == [None]

    def test_update_applies_to_previous_value(self, store):
        store.update_aggregate("a", "t", lambda cur: {"count": 1})
        store.update_aggregate("a", "t", lambda cur: {"count": cur["count"] + 1})

        record = store.get_aggregate("a")
        assert record.data == {"count": 2}
        assert record.type == "t"

    def test_reducer_error_leaves_value_untouched(self, store):
        store.update_aggregate("a", "t", lambda cur: [1, 2])

        def bad(current):
            raise ValueError("nope")

        with pytest.raises(ValueError):
            store.update_aggregate("a", "t", bad)

        assert store.get_aggregate("a").data == [1, 2]

    def test_list_aggregates_by_type(self, store):
        store.update_aggregate("imp_1", "impressions", lambda cur: 1)
        store.update_aggregate("eng_1", "engagement", lambda cur: 2)

        assert [a.id for a in store.list_aggregates("impressions")] == ["imp_1"]
        assert len(store.list_aggregates()) == 2

    def test_missing_aggregate_is_none(self, store):
        assert store.get_aggregate("nope") is None


class TestLifecycle:

    def test_closed_store_raises_store_error(self, tmp_path, make_event):
        store = Store(tmp_path)
        store.close()

        with pytest.raises(StoreError):
            store.put(make_event())

    def test_data_survives_reopen(self, tmp_path, make_event):
        store = Store(tmp_path, database_name="durable")
        event = make_event()
        store.put(event)
        store.close()

        reopened = Store(tmp_path, database_name="durable")
        try:
            assert reopened.get_events([event.id]) == [event]
        finally:
            reopened.close()

    def test_nested_transactions_commit_once(self, store, make_event):
        with store.transaction():
            store.put(make_event())
            with store.transaction():
                store.put(make_event())
            assert store.db.in_transaction

        assert not store.db.in_transaction
        assert store.count_events() == 2

    def test_outer_failure_rolls_back_inner_work(self, store, make_event):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.put(make_event())
                raise RuntimeError("abort")

        assert store.count_events() == 0

    def test_stats(self, store, make_event):
        events = [make_event() for _ in range(3)]
        store.put_many(events)
        store.create_batch([events[0].id])

        stats = store.stats()

        assert stats["events"] == 3
        assert stats["unbatched_events"] == 2
        assert stats["batches"]["pending"] == 1
        assert stats["aggregates"] == 0
