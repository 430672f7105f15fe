"""Redis-based execution store implementation.

Provides a Redis backend for distributed dispatch with true multi-machine
support. Unlike SQLite which requires shared filesystem access, Redis
lets dispatchers run on completely separate machines.

Data Structures:
- reflex:event:{event_id} (STRING): JSON-encoded Event
- reflex:dedup:{key} (STRING): logical expiry in ms, "" for unbounded keys
- reflex:exec:{execution_id} (HASH): Execution fields
- reflex:pair:{link_id}:{event_id} (STRING): execution id for the pair
- reflex:ready (ZSET): claimable executions (score = due time ms)
- reflex:retrying (ZSET): RETRYING executions (score = next_retry_at ms)
- reflex:running (ZSET): RUNNING executions (score = last_attempt_at ms)
- reflex:area:{area_id} (ZSET): executions of an Area (score = created_at ms)
- reflex:executions (ZSET): every execution (score = created_at ms)

Key Features:
- Every state change is one Lua script, so check and update are atomic
- Index sets are maintained inside the same scripts as the hash
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Implements the ExecutionStore interface for Redis.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError(
        "redis-py is required for RedisExecutionStore. Install with: pip install redis"
    )

from pyreflex.models import DeliveryChannel, Event, Execution, ExecutionStatus
from pyreflex.storage.base import ExecutionStore, StorageError, empty_status_counts

PREFIX = "reflex:"

_READY = PREFIX + "ready"
_RETRYING = PREFIX + "retrying"
_RUNNING = PREFIX + "running"
_ALL = PREFIX + "executions"

# Shared claim body: KEYS[1]=ready, KEYS[2]=running, KEYS[3]=retrying
_CLAIM_FUNCTION = """
local function claim(exec_key, id, worker, now)
    local status = redis.call('HGET', exec_key, 'status')
    if status ~= 'PENDING' and status ~= 'RETRYING' then
        return false
    end
    local retry_at = redis.call('HGET', exec_key, 'next_retry_at')
    if retry_at and tonumber(retry_at) > tonumber(now) then
        return false
    end
    redis.call('HINCRBY', exec_key, 'attempt', 1)
    redis.call('HSET', exec_key, 'status', 'RUNNING', 'locked_by', worker, 'last_attempt_at', now)
    redis.call('HSETNX', exec_key, 'first_attempt_at', now)
    redis.call('HDEL', exec_key, 'next_retry_at')
    redis.call('ZREM', KEYS[1], id)
    redis.call('ZREM', KEYS[3], id)
    redis.call('ZADD', KEYS[2], now, id)
    return true
end
"""

_CLAIM_SCRIPT = (
    _CLAIM_FUNCTION
    + """
local exec_key = ARGV[1] .. 'exec:' .. ARGV[2]
if claim(exec_key, ARGV[2], ARGV[3], ARGV[4]) then
    return redis.call('HGETALL', exec_key)
end
return false
"""
)

_CLAIM_NEXT_SCRIPT = (
    _CLAIM_FUNCTION
    + """
local candidates = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[3], 'LIMIT', 0, 16)
for _, id in ipairs(candidates) do
    local exec_key = ARGV[1] .. 'exec:' .. id
    if claim(exec_key, id, ARGV[2], ARGV[3]) then
        return redis.call('HGETALL', exec_key)
    end
    local status = redis.call('HGET', exec_key, 'status')
    if status ~= 'PENDING' and status ~= 'RETRYING' then
        redis.call('ZREM', KEYS[1], id)
    end
end
return false
"""
)

_DEDUP_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    if current == '' or tonumber(current) > tonumber(ARGV[1]) then
        return 0
    end
end
redis.call('SET', KEYS[1], ARGV[2])
if ARGV[3] ~= '' then
    redis.call('PEXPIRE', KEYS[1], ARGV[3])
else
    redis.call('PERSIST', KEYS[1])
end
return 1
"""

# KEYS: pair, exec, ready, area, all, event
# ARGV: id, due score ("" if not claimable), created score, field/value pairs...
_CREATE_SCRIPT = """
local existing = redis.call('GET', KEYS[1])
if existing then
    return existing
end
if redis.call('EXISTS', KEYS[6]) == 0 then
    return redis.error_reply('unknown event')
end
redis.call('SET', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[2], unpack(ARGV, 4))
if ARGV[2] ~= '' then
    redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
end
redis.call('ZADD', KEYS[4], ARGV[3], ARGV[1])
redis.call('ZADD', KEYS[5], ARGV[3], ARGV[1])
return false
"""

# KEYS: exec, ready, running, retrying
# ARGV: id, to_status, now, terminal, expected_attempt, expected_worker,
#       result, error, next_retry_at, from statuses...
_TRANSITION_SCRIPT = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
    return false
end
local allowed = false
for i = 10, #ARGV do
    if ARGV[i] == status then
        allowed = true
    end
end
if not allowed then
    return false
end
if ARGV[5] ~= '' and redis.call('HGET', KEYS[1], 'attempt') ~= ARGV[5] then
    return false
end
if ARGV[6] ~= '' and redis.call('HGET', KEYS[1], 'locked_by') ~= ARGV[6] then
    return false
end

local id = ARGV[1]
redis.call('HSET', KEYS[1], 'status', ARGV[2])
redis.call('HDEL', KEYS[1], 'locked_by')
redis.call('ZREM', KEYS[3], id)
if ARGV[4] == '1' then
    redis.call('HSET', KEYS[1], 'finished_at', ARGV[3])
end
if ARGV[7] ~= '' then
    redis.call('HSET', KEYS[1], 'result_payload', ARGV[7])
end
if ARGV[8] ~= '' then
    redis.call('HSET', KEYS[1], 'error_detail', ARGV[8])
end
if ARGV[2] == 'RETRYING' then
    local due = ARGV[9]
    if due == '' then
        due = ARGV[3]
    end
    redis.call('HSET', KEYS[1], 'next_retry_at', due)
    redis.call('ZADD', KEYS[2], due, id)
    redis.call('ZADD', KEYS[4], due, id)
elseif ARGV[2] == 'PENDING' then
    redis.call('HDEL', KEYS[1], 'next_retry_at')
    redis.call('ZADD', KEYS[2], ARGV[3], id)
    redis.call('ZREM', KEYS[4], id)
else
    redis.call('HDEL', KEYS[1], 'next_retry_at')
    redis.call('ZREM', KEYS[2], id)
    redis.call('ZREM', KEYS[4], id)
end
return redis.call('HGETALL', KEYS[1])
"""

# KEYS: area, ready, retrying   ARGV: prefix, now
_CANCEL_AREA_SCRIPT = """
local cancelled = {}
local ids = redis.call('ZRANGE', KEYS[1], 0, -1)
for _, id in ipairs(ids) do
    local exec_key = ARGV[1] .. 'exec:' .. id
    local status = redis.call('HGET', exec_key, 'status')
    if status == 'PENDING' or status == 'RETRYING' then
        redis.call('HSET', exec_key, 'status', 'CANCELLED', 'finished_at', ARGV[2])
        redis.call('HDEL', exec_key, 'next_retry_at')
        redis.call('ZREM', KEYS[2], id)
        redis.call('ZREM', KEYS[3], id)
        table.insert(cancelled, id)
    end
end
return cancelled
"""


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_millis(value: str | None) -> datetime | None:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


class RedisExecutionStore(ExecutionStore):
    """Redis execution store using connection pooling.

    Usage:
        store = RedisExecutionStore("redis://localhost:6379")
        await store.connect()

        accepted = await store.check_and_set_dedup(key, now, ttl)
        execution = await store.claim_next("dispatcher-1", now)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis execution store.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return f"RedisExecutionStore({self._redis_url})"

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _event_key(event_id: str) -> str:
        return f"{PREFIX}event:{event_id}"

    @staticmethod
    def _dedup_key(key: str) -> str:
        return f"{PREFIX}dedup:{key}"

    @staticmethod
    def _exec_key(execution_id: str) -> str:
        return f"{PREFIX}exec:{execution_id}"

    @staticmethod
    def _pair_key(action_link_id: str, triggering_event_id: str) -> str:
        return f"{PREFIX}pair:{action_link_id}:{triggering_event_id}"

    @staticmethod
    def _area_key(area_id: str) -> str:
        return f"{PREFIX}area:{area_id}"

    # ========================================================================
    # Serialization
    # ========================================================================

    @staticmethod
    def _execution_fields(execution: Execution) -> dict[str, str]:
        fields: dict[str, Any] = {
            "id": execution.id,
            "area_id": execution.area_id,
            "action_link_id": execution.action_link_id,
            "triggering_event_id": execution.triggering_event_id,
            "target_instance_id": execution.target_instance_id,
            "provider": execution.provider,
            "action_type": execution.action_type,
            "status": execution.status.value,
            "attempt": str(execution.attempt),
            "created_at": str(_to_millis(execution.created_at)),
        }
        for name in ("first_attempt_at", "last_attempt_at", "next_retry_at", "finished_at"):
            value = getattr(execution, name)
            if value is not None:
                fields[name] = str(_to_millis(value))
        if execution.locked_by is not None:
            fields["locked_by"] = execution.locked_by
        if execution.result_payload is not None:
            fields["result_payload"] = json.dumps(execution.result_payload, default=str)
        if execution.error_detail is not None:
            fields["error_detail"] = json.dumps(execution.error_detail, default=str)
        return fields

    @staticmethod
    def _parse_execution(data: dict[str, str] | list[str]) -> Execution:
        """Parse an execution from HGETALL output (dict, or flat list from Lua)."""
        if isinstance(data, list):
            data = dict(zip(data[::2], data[1::2], strict=True))
        if not data:
            raise StorageError("Execution hash is empty")

        try:
            return Execution(
                id=data["id"],
                area_id=data["area_id"],
                action_link_id=data["action_link_id"],
                triggering_event_id=data["triggering_event_id"],
                target_instance_id=data["target_instance_id"],
                provider=data["provider"],
                action_type=data["action_type"],
                status=ExecutionStatus(data["status"]),
                attempt=int(data.get("attempt", 0)),
                created_at=_from_millis(data["created_at"]),
                first_attempt_at=_from_millis(data.get("first_attempt_at")),
                last_attempt_at=_from_millis(data.get("last_attempt_at")),
                next_retry_at=_from_millis(data.get("next_retry_at")),
                finished_at=_from_millis(data.get("finished_at")),
                locked_by=data.get("locked_by"),
                result_payload=(
                    json.loads(data["result_payload"]) if "result_payload" in data else None
                ),
                error_detail=json.loads(data["error_detail"]) if "error_detail" in data else None,
            )
        except (KeyError, ValueError) as e:
            raise StorageError(f"Corrupt execution hash: {e}") from e

    async def _load_executions(self, ids: list[str]) -> list[Execution]:
        if not ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for execution_id in ids:
                pipe.hgetall(self._exec_key(execution_id))
            rows = await pipe.execute()
        return [self._parse_execution(row) for row in rows if row]

    # ========================================================================
    # Events
    # ========================================================================

    async def append_event(self, event: Event) -> None:
        self._check_connected()

        document = json.dumps(
            {
                "id": event.id,
                "source_service": event.source_service,
                "source_action_type": event.source_action_type,
                "occurred_at": _to_millis(event.occurred_at),
                "received_at": _to_millis(event.received_at),
                "raw_payload": event.raw_payload,
                "dedup_key": event.dedup_key,
                "content_hash": event.content_hash,
                "channel": event.channel.value,
                "action_instance_id": event.action_instance_id,
                "chain_depth": event.chain_depth,
            },
            default=str,
        )

        try:
            await self._redis.set(self._event_key(event.id), document, nx=True)
        except redis.RedisError as e:
            raise StorageError(f"Failed to append event {event.id}: {e}") from e

    async def get_event(self, event_id: str) -> Event | None:
        self._check_connected()

        raw = await self._redis.get(self._event_key(event_id))
        if raw is None:
            return None

        data = json.loads(raw)
        return Event(
            id=data["id"],
            source_service=data["source_service"],
            source_action_type=data["source_action_type"],
            occurred_at=_from_millis(str(data["occurred_at"])),
            received_at=_from_millis(str(data["received_at"])),
            raw_payload=data["raw_payload"],
            dedup_key=data["dedup_key"],
            content_hash=data["content_hash"],
            channel=DeliveryChannel(data["channel"]),
            action_instance_id=data["action_instance_id"],
            chain_depth=data["chain_depth"],
        )

    # ========================================================================
    # Dedup
    # ========================================================================

    async def check_and_set_dedup(
        self, key: str, now: datetime, ttl: timedelta | None = None
    ) -> bool:
        """
        Atomically record a dedup key.

        The logical expiry is stored as the value and compared against
        ``now``; PEXPIRE only reclaims memory once the window has passed.
        """
        self._check_connected()

        now_ms = _to_millis(now)
        if ttl is not None:
            ttl_ms = max(int(ttl.total_seconds() * 1000), 1)
            expires = str(now_ms + ttl_ms)
            pexpire = str(ttl_ms)
        else:
            expires = ""
            pexpire = ""

        try:
            accepted = await self._redis.eval(
                _DEDUP_SCRIPT, 1, self._dedup_key(key), now_ms, expires, pexpire
            )
        except redis.RedisError as e:
            raise StorageError(f"Dedup check-and-set failed for {key}: {e}") from e

        return accepted == 1

    async def release_dedup(self, key: str) -> None:
        self._check_connected()

        try:
            await self._redis.delete(self._dedup_key(key))
        except redis.RedisError as e:
            raise StorageError(f"Dedup release failed for {key}: {e}") from e

    # ========================================================================
    # Executions
    # ========================================================================

    async def create_execution(self, execution: Execution) -> tuple[Execution, bool]:
        self._check_connected()

        fields = self._execution_fields(execution)
        flat: list[str] = []
        for name, value in fields.items():
            flat.extend((name, value))

        due = ""
        if execution.status.is_claimable:
            due = str(_to_millis(execution.next_retry_at or execution.created_at))

        try:
            existing_id = await self._redis.eval(
                _CREATE_SCRIPT,
                6,
                self._pair_key(execution.action_link_id, execution.triggering_event_id),
                self._exec_key(execution.id),
                _READY,
                self._area_key(execution.area_id),
                _ALL,
                self._event_key(execution.triggering_event_id),
                execution.id,
                due,
                fields["created_at"],
                *flat,
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to create execution {execution.id}: {e}") from e

        if existing_id is None:
            # Don't clear here - dispatcher clears after waking up
            self._work_notify.set()
            return execution, True

        existing = await self.get_execution(existing_id)
        if existing is None:
            raise StorageError(f"Execution index points to missing hash: {existing_id}")
        return existing, False

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()

        data = await self._redis.hgetall(self._exec_key(execution_id))
        if not data:
            return None
        return self._parse_execution(data)

    async def find_execution(
        self, action_link_id: str, triggering_event_id: str
    ) -> Execution | None:
        self._check_connected()

        execution_id = await self._redis.get(self._pair_key(action_link_id, triggering_event_id))
        if execution_id is None:
            return None
        return await self.get_execution(execution_id)

    async def claim_execution(
        self, execution_id: str, worker_id: str, now: datetime
    ) -> Execution | None:
        """Atomically claim one execution.

        Design: Optimistic Concurrency Control
        Lua script ensures atomicity without locks.
        """
        self._check_connected()

        try:
            raw = await self._redis.eval(
                _CLAIM_SCRIPT,
                3,
                _READY,
                _RUNNING,
                _RETRYING,
                PREFIX,
                execution_id,
                worker_id,
                _to_millis(now),
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to claim execution {execution_id}: {e}") from e

        return self._parse_execution(raw) if raw else None

    async def claim_next(self, worker_id: str, now: datetime) -> Execution | None:
        self._check_connected()

        try:
            raw = await self._redis.eval(
                _CLAIM_NEXT_SCRIPT,
                3,
                _READY,
                _RUNNING,
                _RETRYING,
                PREFIX,
                worker_id,
                _to_millis(now),
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to claim next execution: {e}") from e

        if not raw:
            return None

        # Daisy-chain: wake another dispatcher if more work is due
        if await self._redis.zcount(_READY, "-inf", _to_millis(now)) > 0:
            self._work_notify.set()

        return self._parse_execution(raw)

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

        try:
            raw = await self._redis.eval(
                _TRANSITION_SCRIPT,
                4,
                self._exec_key(execution_id),
                _READY,
                _RUNNING,
                _RETRYING,
                execution_id,
                to_status.value,
                _to_millis(now),
                "1" if to_status.is_terminal else "0",
                str(expected_attempt) if expected_attempt is not None else "",
                expected_worker or "",
                json.dumps(result_payload, default=str) if result_payload is not None else "",
                json.dumps(error_detail, default=str) if error_detail is not None else "",
                str(_to_millis(next_retry_at)) if next_retry_at is not None else "",
                *allowed,
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to transition execution {execution_id}: {e}") from e

        if not raw:
            return None

        if to_status.is_claimable:
            self._work_notify.set()
        return self._parse_execution(raw)

    async def cancel_area_executions(self, area_id: str, now: datetime) -> list[str]:
        self._check_connected()

        try:
            cancelled = await self._redis.eval(
                _CANCEL_AREA_SCRIPT,
                3,
                self._area_key(area_id),
                _READY,
                _RETRYING,
                PREFIX,
                _to_millis(now),
            )
        except redis.RedisError as e:
            raise StorageError(f"Failed to cancel executions of area {area_id}: {e}") from e

        return list(cancelled or [])

    async def list_executions(
        self,
        area_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        self._check_connected()

        index = self._area_key(area_id) if area_id is not None else _ALL
        low = _to_millis(since) if since is not None else "-inf"
        high = f"({_to_millis(until)}" if until is not None else "+inf"

        ids = await self._redis.zrangebyscore(index, low, high)
        executions = await self._load_executions(ids)

        if statuses is not None:
            wanted = frozenset(statuses)
            executions = [e for e in executions if e.status in wanted]
        return executions

    async def find_stale_executions(self, started_before: datetime) -> list[Execution]:
        self._check_connected()

        ids = await self._redis.zrangebyscore(_RUNNING, "-inf", f"({_to_millis(started_before)}")
        executions = await self._load_executions(ids)
        return [e for e in executions if e.status == ExecutionStatus.RUNNING]

    async def get_next_retry_time(self) -> datetime | None:
        self._check_connected()

        result = await self._redis.zrange(_RETRYING, 0, 0, withscores=True)
        if result:
            _, timestamp_ms = result[0]
            return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
        return None

    async def count_by_status(self) -> dict[ExecutionStatus, int]:
        self._check_connected()

        ids = await self._redis.zrange(_ALL, 0, -1)
        counts = empty_status_counts()
        if not ids:
            return counts

        async with self._redis.pipeline(transaction=False) as pipe:
            for execution_id in ids:
                pipe.hget(self._exec_key(execution_id), "status")
            statuses = await pipe.execute()

        for status in statuses:
            if status is not None:
                counts[ExecutionStatus(status)] += 1
        return counts

    async def reset(self) -> None:
        """Reset all pyreflex data.

        Only deletes reflex:* keys, doesn't affect other Redis data.
        """
        self._check_connected()

        keys = []
        async for key in self._redis.scan_iter(match=f"{PREFIX}*"):
            keys.append(key)

        if keys:
            await self._redis.delete(*keys)
        self._work_notify.clear()
