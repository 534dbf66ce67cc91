"""SQLite storage layer -- the only owner of persisted pipeline state.

Three collections live in one on-device database:

    events      raw pending events, indexed by timestamp and by type
    batches     delivery units with lifecycle state
    aggregates  keyed rollups read by dashboards

A fourth table, batch_events, records which batch has claimed an event. Its
primary key is the event id, so an event can be claimed by at most one batch.

Every multi-row change for one logical unit runs in a single transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, TypeVar

from core.models.aggregates import Aggregate
from core.models.batches import OUTSTANDING_STATUSES, Batch
from core.models.events import Event

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stay well below SQLite's host-parameter limit.
_CHUNK = 500


class StoreError(Exception):
    """Recoverable storage failure (I/O error, disk full, constraint violation)."""


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _chunks(items: list[str]) -> Iterator[list[str]]:
    for i in range(0, len(items), _CHUNK):
        yield items[i:i + _CHUNK]


class Store:
    """Transactional event store backed by SQLite.

    The database file is <home>/<database_name>.sqlite.
    """

    def __init__(self, home: Path, database_name: str = "analytics_store") -> None:
        self._home = home
        self._db_path = home / f"{database_name}.sqlite"
        self._db: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._init_sqlite()

    # ------------------------------------------------------------------
    # SQLite
    # ------------------------------------------------------------------

    def _init_sqlite(self) -> None:
        """Open the database and create tables if needed."""
        try:
            self._home.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly below.
            self._db = sqlite3.connect(str(self._db_path), isolation_level=None)
            self._db.row_factory = sqlite3.Row
            self._db.execute("PRAGMA journal_mode=WAL")
            self._db.execute("PRAGMA synchronous=NORMAL")
            self._db.execute("PRAGMA foreign_keys=ON")

            self._db.executescript("""
                CREATE TABLE IF NOT EXISTS events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    event_category TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    stored_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_time
                    ON events(timestamp);
                CREATE INDEX IF NOT EXISTS idx_events_type
                    ON events(event_type);

                CREATE TABLE IF NOT EXISTS batches (
                    batch_id TEXT PRIMARY KEY,
                    event_ids TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    sent_at TEXT,
                    last_error TEXT,
                    next_attempt_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_batches_status
                    ON batches(status, created_at);

                CREATE TABLE IF NOT EXISTS batch_events (
                    event_id TEXT PRIMARY KEY,
                    batch_id TEXT NOT NULL
                        REFERENCES batches(batch_id) ON DELETE CASCADE,
                    position INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_batch_events_batch
                    ON batch_events(batch_id, position);

                CREATE TABLE IF NOT EXISTS aggregates (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    data TEXT,
                    last_updated TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_aggregates_type
                    ON aggregates(type);
            """)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Failed to open event store at {self._db_path}: {exc}") from exc
        logger.info("Event store initialized at %s", self._db_path)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise StoreError("Event store is closed")
        return self._db

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._db:
            self._db.close()
            self._db = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically: every change commits, or none does.

        Transactions nest; only the outermost one commits.
        """
        db = self.db
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield db
            finally:
                self._tx_depth -= 1
            return

        try:
            db.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StoreError(f"Could not begin transaction: {exc}") from exc

        self._tx_depth = 1
        try:
            yield db
            db.execute("COMMIT")
        except sqlite3.Error as exc:
            self._rollback(db)
            raise StoreError(str(exc)) from exc
        except BaseException:
            self._rollback(db)
            raise
        finally:
            self._tx_depth = 0

    def _rollback(self, db: sqlite3.Connection) -> None:
        if db.in_transaction:
            db.execute("ROLLBACK")

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self.db.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def put(self, event: Event) -> str:
        """Insert one event. Returns its id."""
        return self.put_many([event])[0]

    def put_many(self, events: list[Event]) -> list[str]:
        """Insert events in one transaction. Returns their ids in order.

        Inserting is idempotent per event id: an id that is already stored is
        left as it is, so a producer that resends an event does not fail the call.
        """
        if not events:
            return []

        rows = []
        stored_at = _iso(datetime.now(timezone.utc))
        for event in events:
            try:
                body = event.model_dump_json(by_alias=True)
            except ValueError as exc:
                raise StoreError(f"Event {event.id} is not serializable: {exc}") from exc
            rows.append((
                event.id,
                event.event_type,
                event.event_category.value,
                event.context.timestamp,
                body,
                stored_at,
            ))

        with self.transaction() as db:
            cur = db.executemany(
                """INSERT INTO events
                   (id, event_type, event_category, timestamp, body, stored_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO NOTHING""",
                rows,
            )
        skipped = len(rows) - cur.rowcount
        if skipped:
            logger.debug("Skipped %d event(s) already in the store", skipped)
        return [e.id for e in events]

    def get_events(self, ids: list[str]) -> list[Event]:
        """Load events by id, preserving the order of `ids`. Missing ids are skipped."""
        found: dict[str, Event] = {}
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            rows = self._query(
                f"SELECT id, body FROM events WHERE id IN ({placeholders})",
                chunk,
            )
            for row in rows:
                found[row["id"]] = Event.model_validate_json(row["body"])
        return [found[i] for i in ids if i in found]

    def count_events(self, event_type: str | None = None) -> int:
        if event_type:
            rows = self._query("SELECT COUNT(*) FROM events WHERE event_type = ?", (event_type,))
        else:
            rows = self._query("SELECT COUNT(*) FROM events")
        return rows[0][0]

    def count_unbatched_events(self) -> int:
        """Count stored events not yet claimed by any batch."""
        rows = self._query(
            """SELECT COUNT(*) FROM events e
               LEFT JOIN batch_events be ON be.event_id = e.id
               WHERE be.event_id IS NULL"""
        )
        return rows[0][0]

    def oldest_unbatched_event_ids(self, limit: int) -> list[str]:
        """Ids of the oldest unclaimed events, in insertion order."""
        rows = self._query(
            """SELECT e.id FROM events e
               LEFT JOIN batch_events be ON be.event_id = e.id
               WHERE be.event_id IS NULL
               ORDER BY e.seq ASC LIMIT ?""",
            (limit,),
        )
        return [row["id"] for row in rows]

    def oldest_unbatched_timestamp(self) -> int | None:
        """Epoch-ms timestamp of the oldest unclaimed event, if any."""
        rows = self._query(
            """SELECT e.timestamp FROM events e
               LEFT JOIN batch_events be ON be.event_id = e.id
               WHERE be.event_id IS NULL
               ORDER BY e.seq ASC LIMIT 1"""
        )
        return rows[0]["timestamp"] if rows else None

    def delete_events(self, ids: list[str]) -> int:
        """Delete events in one transaction. Returns how many rows went away."""
        deleted = 0
        with self.transaction() as db:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" * len(chunk))
                cur = db.execute(f"DELETE FROM events WHERE id IN ({placeholders})", chunk)
                deleted += cur.rowcount
        return deleted

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(self, event_ids: list[str]) -> Batch:
        """Create a pending batch and claim its events, atomically.

        Raises StoreError if any event is already claimed by another batch.
        """
        batch = Batch(event_ids=list(event_ids))
        with self.transaction() as db:
            db.execute(
                """INSERT INTO batches
                   (batch_id, event_ids, status, created_at, attempts)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    batch.batch_id,
                    json.dumps(batch.event_ids),
                    batch.status,
                    _iso(batch.created_at),
                    batch.attempts,
                ),
            )
            db.executemany(
                "INSERT INTO batch_events (event_id, batch_id, position) VALUES (?, ?, ?)",
                [(eid, batch.batch_id, pos) for pos, eid in enumerate(batch.event_ids)],
            )
        return batch

    def update_batch(self, batch: Batch) -> None:
        """Persist a batch's lifecycle fields (status, attempts, timestamps)."""
        with self.transaction() as db:
            cur = db.execute(
                """UPDATE batches
                   SET status = ?, attempts = ?, sent_at = ?, last_error = ?,
                       next_attempt_at = ?
                   WHERE batch_id = ?""",
                (
                    batch.status,
                    batch.attempts,
                    _iso(batch.sent_at) if batch.sent_at else None,
                    batch.last_error,
                    _iso(batch.next_attempt_at) if batch.next_attempt_at else None,
                    batch.batch_id,
                ),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Unknown batch: {batch.batch_id}")

    def complete_batch(self, batch: Batch) -> int:
        """Mark a batch complete and delete its events in the same transaction.

        Returns the number of events deleted.
        """
        with self.transaction() as db:
            self.update_batch(batch)
            deleted = self.delete_events(batch.event_ids)
            db.execute("DELETE FROM batch_events WHERE batch_id = ?", (batch.batch_id,))
        return deleted

    def get_batch(self, batch_id: str) -> Batch | None:
        rows = self._query("SELECT * FROM batches WHERE batch_id = ?", (batch_id,))
        return self._row_to_batch(rows[0]) if rows else None

    def list_batches(self, status: str | None = None, limit: int | None = None) -> list[Batch]:
        """List batches oldest first, optionally filtered by status."""
        sql = "SELECT * FROM batches"
        params: list[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC, rowid ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_batch(r) for r in self._query(sql, params)]

    def has_outstanding_batch(self) -> bool:
        """True if any batch is pending or sending."""
        placeholders = ",".join("?" * len(OUTSTANDING_STATUSES))
        rows = self._query(
            f"SELECT 1 FROM batches WHERE status IN ({placeholders}) LIMIT 1",
            OUTSTANDING_STATUSES,
        )
        return bool(rows)

    def delete_batch(self, batch_id: str) -> bool:
        """Delete a batch record (and its claims). Returns True if it existed."""
        with self.transaction() as db:
            cur = db.execute("DELETE FROM batches WHERE batch_id = ?", (batch_id,))
        return cur.rowcount > 0

    def recover_in_flight(self) -> int:
        """Reset batches left 'sending' by an interrupted run back to 'pending'.

        The interrupted call was never observed, so attempts is unchanged.
        """
        with self.transaction() as db:
            cur = db.execute("UPDATE batches SET status = 'pending' WHERE status = 'sending'")
        return cur.rowcount

    def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete complete batches sent before cutoff. Returns the count."""
        with self.transaction() as db:
            cur = db.execute(
                """DELETE FROM batches
                   WHERE status = 'complete' AND sent_at IS NOT NULL AND sent_at < ?""",
                (_iso(cutoff),),
            )
        return cur.rowcount

    def requeue_batch(self, batch_id: str) -> Batch | None:
        """Give a failed batch a fresh retry budget. Returns None unless it was failed."""
        with self.transaction():
            batch = self.get_batch(batch_id)
            if batch is None or batch.status != "failed":
                return None
            batch.status = "pending"
            batch.attempts = 0
            batch.last_error = None
            batch.next_attempt_at = None
            self.update_batch(batch)
        return batch

    def _row_to_batch(self, row: sqlite3.Row) -> Batch:
        return Batch(
            batch_id=row["batch_id"],
            event_ids=json.loads(row["event_ids"]),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            attempts=row["attempts"],
            sent_at=_parse_dt(row["sent_at"]),
            last_error=row["last_error"],
            next_attempt_at=_parse_dt(row["next_attempt_at"]),
        )

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def update_aggregate(
        self,
        aggregate_id: str,
        aggregate_type: str,
        reducer: Callable[[T | None], T],
    ) -> T:
        """Read the current value, apply reducer, write the result; atomically.

        The reducer receives None on first write. Its result must be
        JSON-serializable.
        """
        with self.transaction() as db:
            row = db.execute(
                "SELECT data FROM aggregates WHERE id = ?", (aggregate_id,)
            ).fetchone()
            current = json.loads(row["data"]) if row and row["data"] is not None else None
            new_data = reducer(current)
            db.execute(
                """INSERT INTO aggregates (id, type, data, last_updated)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       type = excluded.type,
                       data = excluded.data,
                       last_updated = excluded.last_updated""",
                (
                    aggregate_id,
                    aggregate_type,
                    json.dumps(new_data),
                    _iso(datetime.now(timezone.utc)),
                ),
            )
        return new_data

    def get_aggregate(self, aggregate_id: str) -> Aggregate | None:
        rows = self._query("SELECT * FROM aggregates WHERE id = ?", (aggregate_id,))
        return self._row_to_aggregate(rows[0]) if rows else None

    def list_aggregates(self, aggregate_type: str | None = None) -> list[Aggregate]:
        if aggregate_type:
            rows = self._query(
                "SELECT * FROM aggregates WHERE type = ? ORDER BY id", (aggregate_type,)
            )
        else:
            rows = self._query("SELECT * FROM aggregates ORDER BY id")
        return [self._row_to_aggregate(r) for r in rows]

    def _row_to_aggregate(self, row: sqlite3.Row) -> Aggregate:
        return Aggregate(
            id=row["id"],
            type=row["type"],
            data=json.loads(row["data"]) if row["data"] is not None else None,
            last_updated=datetime.fromisoformat(row["last_updated"]),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Row counts for health checks and the CLI status command."""
        by_status = {s: 0 for s in ("pending", "sending", "complete", "failed")}
        for row in self._query("SELECT status, COUNT(*) AS n FROM batches GROUP BY status"):
            by_status[row["status"]] = row["n"]
        return {
            "events": self.count_events(),
            "unbatched_events": self.count_unbatched_events(),
            "batches": by_status,
            "aggregates": self._query("SELECT COUNT(*) FROM aggregates")[0][0],
        }
