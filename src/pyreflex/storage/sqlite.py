"""SQLite-backed storage implementation for pyreflex.

Design Pattern: Adapter Pattern
SqliteExecutionStore adapts a SQLite database to the ExecutionStore
interface. Complex database logic is isolated here, not scattered across
the pipeline.

Implementation details:
- aiosqlite for async operations
- WAL mode so several worker processes can share one database file
- Every coordination primitive is a single statement: conditional
  ``UPDATE ... WHERE status IN (...) RETURNING`` for claims and
  transitions, ``INSERT ... ON CONFLICT ... WHERE`` for dedup keys
- UNIQUE(action_link_id, triggering_event_id) anchors at-most-once success
- INTEGER timestamps (milliseconds since epoch, UTC)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from pyreflex.models import DeliveryChannel, Event, Execution, ExecutionStatus
from pyreflex.storage.base import ExecutionStore, StorageError, empty_status_counts

_EXECUTION_COLUMNS = """
    id, area_id, action_link_id, triggering_event_id, target_instance_id,
    provider, action_type, status, attempt, created_at, first_attempt_at,
    last_attempt_at, next_retry_at, finished_at, locked_by, result_payload,
    error_detail
"""

_CLAIMABLE = (ExecutionStatus.PENDING.value, ExecutionStatus.RETRYING.value)


def _to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


def _dump(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _load(value: str | None) -> dict[str, Any] | None:
    return json.loads(value) if value is not None else None


class SqliteExecutionStore(ExecutionStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first
    (no async work in __init__).

    Usage:
        store = SqliteExecutionStore("reflex.db")
        await store.connect()
        try:
            await store.append_event(event)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage with notification support (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection
        self._work_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls) -> SqliteExecutionStore:
        """
        Create an in-memory SQLite store for testing.

        Example:
            store = await SqliteExecutionStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteExecutionStore(in-memory)"
        return f"SqliteExecutionStore({self.db_path})"

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Autocommit: each statement is its own transaction
            )

            # In-memory databases return "memory" and don't support WAL
            cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
            result = await cursor.fetchone()
            await cursor.close()
            if result:
                mode = result[0].upper()
                if mode not in ("WAL", "MEMORY"):
                    raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")
            await self._connection.execute("PRAGMA foreign_keys=ON")

            await self._create_schema()
            await self._connection.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to open {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - events: immutable trigger occurrences, referenced by executions
        - dedup_keys: one row per seen key, expires_at NULL = keep forever
        - executions: lifecycle rows, never deleted
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                source_service TEXT NOT NULL,
                source_action_type TEXT NOT NULL,
                occurred_at INTEGER NOT NULL,
                received_at INTEGER NOT NULL,
                raw_payload TEXT NOT NULL,
                dedup_key TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                channel TEXT NOT NULL,
                action_instance_id TEXT,
                chain_depth INTEGER NOT NULL DEFAULT 0
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS dedup_keys (
                key TEXT PRIMARY KEY,
                seen_at INTEGER NOT NULL,
                expires_at INTEGER
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                area_id TEXT NOT NULL,
                action_link_id TEXT NOT NULL,
                triggering_event_id TEXT NOT NULL REFERENCES events(id),
                target_instance_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                action_type TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'PENDING','RUNNING','SUCCEEDED','FAILED','RETRYING','CANCELLED'
                ) ) NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                first_attempt_at INTEGER,
                last_attempt_at INTEGER,
                next_retry_at INTEGER,
                finished_at INTEGER,
                locked_by TEXT,
                result_payload TEXT,
                error_detail TEXT,
                UNIQUE (action_link_id, triggering_event_id)
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_claim
            ON executions(status, next_retry_at, created_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_area
            ON executions(area_id, created_at)
        """)

    def _check_connected(self) -> None:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _row_to_execution(row: Any) -> Execution:
        return Execution(
            id=row[0],
            area_id=row[1],
            action_link_id=row[2],
            triggering_event_id=row[3],
            target_instance_id=row[4],
            provider=row[5],
            action_type=row[6],
            status=ExecutionStatus(row[7]),
            attempt=row[8],
            created_at=_from_millis(row[9]),
            first_attempt_at=_from_millis(row[10]),
            last_attempt_at=_from_millis(row[11]),
            next_retry_at=_from_millis(row[12]),
            finished_at=_from_millis(row[13]),
            locked_by=row[14],
            result_payload=_load(row[15]),
            error_detail=_load(row[16]),
        )

    async def _fetch_one_execution(self, sql: str, params: tuple) -> Execution | None:
        cursor = await self._connection.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        await self._connection.commit()
        return self._row_to_execution(row) if row is not None else None

    # ========================================================================
    # Events
    # ========================================================================

    async def append_event(self, event: Event) -> None:
        self._check_connected()
        async with self._lock:
            try:
                await self._connection.execute(
                    """
                    INSERT INTO events (
                        id, source_service, source_action_type, occurred_at, received_at,
                        raw_payload, dedup_key, content_hash, channel, action_instance_id,
                        chain_depth
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                """,
                    (
                        event.id,
                        event.source_service,
                        event.source_action_type,
                        _to_millis(event.occurred_at),
                        _to_millis(event.received_at),
                        json.dumps(event.raw_payload, default=str),
                        event.dedup_key,
                        event.content_hash,
                        event.channel.value,
                        event.action_instance_id,
                        event.chain_depth,
                    ),
                )
                await self._connection.commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to append event {event.id}: {e}") from e

    async def get_event(self, event_id: str) -> Event | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                """
                SELECT id, source_service, source_action_type, occurred_at, received_at,
                       raw_payload, dedup_key, content_hash, channel, action_instance_id,
                       chain_depth
                FROM events WHERE id = ?
            """,
                (event_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            return None

        return Event(
            id=row[0],
            source_service=row[1],
            source_action_type=row[2],
            occurred_at=_from_millis(row[3]),
            received_at=_from_millis(row[4]),
            raw_payload=json.loads(row[5]),
            dedup_key=row[6],
            content_hash=row[7],
            channel=DeliveryChannel(row[8]),
            action_instance_id=row[9],
            chain_depth=row[10],
        )

    # ========================================================================
    # Dedup
    # ========================================================================

    async def check_and_set_dedup(
        self, key: str, now: datetime, ttl: timedelta | None = None
    ) -> bool:
        """Single upsert: the row is (re)written only if absent or expired."""
        self._check_connected()

        now_ms = _to_millis(now)
        expires_ms = _to_millis(now + ttl) if ttl is not None else None

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    INSERT INTO dedup_keys (key, seen_at, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE
                    SET seen_at = excluded.seen_at, expires_at = excluded.expires_at
                    WHERE dedup_keys.expires_at IS NOT NULL
                      AND dedup_keys.expires_at <= excluded.seen_at
                """,
                    (key, now_ms, expires_ms),
                )
                await self._connection.commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Dedup check-and-set failed for {key}: {e}") from e

        return cursor.rowcount == 1

    async def release_dedup(self, key: str) -> None:
        self._check_connected()

        async with self._lock:
            try:
                await self._connection.execute("DELETE FROM dedup_keys WHERE key = ?", (key,))
                await self._connection.commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Dedup release failed for {key}: {e}") from e

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    f"""
                    INSERT INTO executions ({_EXECUTION_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(action_link_id, triggering_event_id) DO NOTHING
                """,
                    (
                        execution.id,
                        execution.area_id,
                        execution.action_link_id,
                        execution.triggering_event_id,
                        execution.target_instance_id,
                        execution.provider,
                        execution.action_type,
                        execution.status.value,
                        execution.attempt,
                        _to_millis(execution.created_at),
                        _to_millis(execution.first_attempt_at),
                        _to_millis(execution.last_attempt_at),
                        _to_millis(execution.next_retry_at),
                        _to_millis(execution.finished_at),
                        execution.locked_by,
                        _dump(execution.result_payload),
                        _dump(execution.error_detail),
                    ),
                )
                await self._connection.commit()
                created = cursor.rowcount == 1
            except aiosqlite.IntegrityError as e:
                await self._connection.rollback()
                raise StorageError(
                    f"Cannot create execution {execution.id} "
                    f"(unknown event {execution.triggering_event_id}?): {e}"
                ) from e
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to create execution {execution.id}: {e}") from e

        if created:
            self._work_notify.set()
            return execution, True

        existing = await self.find_execution(
            execution.action_link_id, execution.triggering_event_id
        )
        if existing is None:
            raise StorageError(f"Execution vanished after conflict: {execution.dedup_pair}")
        return existing, False

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        async with self._lock:
            return await self._fetch_one_execution(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution_id,)
            )

    async def find_execution(
        self, action_link_id: str, triggering_event_id: str
    ) -> Execution | None:
        self._check_connected()
        async with self._lock:
            return await self._fetch_one_execution(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions
                WHERE action_link_id = ? AND triggering_event_id = ?
            """,
                (action_link_id, triggering_event_id),
            )

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        """Claim by id with one conditional UPDATE (optimistic concurrency)."""
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            try:
                return await self._fetch_one_execution(
                    f"""
                    UPDATE executions
                    SET status = 'RUNNING',
                        attempt = attempt + 1,
                        locked_by = ?,
                        first_attempt_at = COALESCE(first_attempt_at, ?),
                        last_attempt_at = ?,
                        next_retry_at = NULL
                    WHERE id = ?
                      AND status IN (?, ?)
                      AND (next_retry_at IS NULL OR next_retry_at <= ?)
                    RETURNING {_EXECUTION_COLUMNS}
                """,
                    (worker_id, now_ms, now_ms, execution_id, *_CLAIMABLE, now_ms),
                )
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to claim execution {execution_id}: {e}") from e

    async def claim_next(self, worker_id: str, now: datetime) -> Execution | None:
        """
        Claim the oldest due execution.

        Design Pattern: Optimistic Concurrency Control
        The subquery picks a candidate and the outer WHERE re-checks the
        status inside the same statement, so two processes sharing the file
        cannot both claim it.
        """
        self._check_connected()
        now_ms = _to_millis(now)

        async with self._lock:
            try:
                return await self._fetch_one_execution(
                    f"""
                    UPDATE executions
                    SET status = 'RUNNING',
                        attempt = attempt + 1,
                        locked_by = ?,
                        first_attempt_at = COALESCE(first_attempt_at, ?),
                        last_attempt_at = ?,
                        next_retry_at = NULL
                    WHERE id = (
                        SELECT id FROM executions
                        WHERE status IN (?, ?)
                          AND (next_retry_at IS NULL OR next_retry_at <= ?)
                        ORDER BY COALESCE(next_retry_at, created_at) ASC, created_at ASC
                        LIMIT 1
                    )
                      AND status IN (?, ?)
                    RETURNING {_EXECUTION_COLUMNS}
                """,
                    (worker_id, now_ms, now_ms, *_CLAIMABLE, now_ms, *_CLAIMABLE),
                )
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to claim next execution: {e}") from e

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatus],
        to_status: ExecutionStatus,
        now: datetime,
        *,
        expected_attempt: int | None = None,
        expected_worker: str | None = None,
        result_payload: dict[str, Any] | None = None,
        error_detail: dict[str, Any] | None = None,
        next_retry_at: datetime | None = None,
    ) -> Execution | None:
        self._check_connected()

        allowed = [status.value for status in from_statuses]
        if not allowed:
            return None

        placeholders = ", ".join("?" for _ in allowed)
        conditions = ["id = ?", f"status IN ({placeholders})"]
        params: list[Any] = [execution_id, *allowed]
        if expected_attempt is not None:
            conditions.append("attempt = ?")
            params.append(expected_attempt)
        if expected_worker is not None:
            conditions.append("locked_by = ?")
            params.append(expected_worker)

        retry_ms = _to_millis(next_retry_at) if to_status == ExecutionStatus.RETRYING else None
        finished_ms = _to_millis(now) if to_status.is_terminal else None

        sql = f"""
            UPDATE executions
            SET status = ?,
                locked_by = NULL,
                next_retry_at = ?,
                finished_at = COALESCE(?, finished_at),
                result_payload = COALESCE(?, result_payload),
                error_detail = COALESCE(?, error_detail)
            WHERE {" AND ".join(conditions)}
            RETURNING {_EXECUTION_COLUMNS}
        """

        async with self._lock:
            try:
                updated = await self._fetch_one_execution(
                    sql,
                    (
                        to_status.value,
                        retry_ms,
                        finished_ms,
                        _dump(result_payload),
                        _dump(error_detail),
                        *params,
                    ),
                )
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to transition execution {execution_id}: {e}") from e

        if updated is not None and to_status == ExecutionStatus.RETRYING:
            self._work_notify.set()
        return updated

    async def cancel_area_executions(self, area_id: str, now: datetime) -> list[str]:
        self._check_connected()
        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    """
                    UPDATE executions
                    SET status = 'CANCELLED', next_retry_at = NULL, finished_at = ?
                    WHERE area_id = ? AND status IN (?, ?)
                    RETURNING id
                """,
                    (_to_millis(now), area_id, *_CLAIMABLE),
                )
                rows = await cursor.fetchall()
                await cursor.close()
                await self._connection.commit()
            except aiosqlite.Error as e:
                raise StorageError(f"Failed to cancel executions of area {area_id}: {e}") from e

        return [row[0] for row in rows]

    async def list_executions(
        self,
        area_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        self._check_connected()

        conditions: list[str] = []
        params: list[Any] = []
        if area_id is not None:
            conditions.append("area_id = ?")
            params.append(area_id)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_to_millis(since))
        if until is not None:
            conditions.append("created_at < ?")
            params.append(_to_millis(until))
        if statuses is not None:
            wanted = [status.value for status in statuses]
            if not wanted:
                return []
            conditions.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM executions {where} ORDER BY created_at ASC",
                tuple(params),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return [self._row_to_execution(row) for row in rows]

    async def find_stale_executions(self, started_before: datetime) -> list[Execution]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM executions
                WHERE status = 'RUNNING' AND last_attempt_at < ?
            """,
                (_to_millis(started_before),),
            )
            rows = await cursor.fetchall()
            await cursor.close()

        return [self._row_to_execution(row) for row in rows]

    async def get_next_retry_time(self) -> datetime | None:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT MIN(next_retry_at) FROM executions WHERE status = 'RETRYING'"
            )
            row = await cursor.fetchone()
            await cursor.close()

        return _from_millis(row[0]) if row else None

    async def count_by_status(self) -> dict[ExecutionStatus, int]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT status, COUNT(*) FROM executions GROUP BY status"
            )
            rows = await cursor.fetchall()
            await cursor.close()

        counts = empty_status_counts()
        for status, count in rows:
            counts[ExecutionStatus(status)] = count
        return counts

    async def reset(self) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute("DELETE FROM executions")
            await self._connection.execute("DELETE FROM dedup_keys")
            await self._connection.execute("DELETE FROM events")
            await self._connection.commit()
        self._work_notify.clear()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
