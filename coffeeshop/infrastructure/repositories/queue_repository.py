"""
Queue Repository

Task storage behind one interface with two implementations:

- RedisQueueBackend: durable, shared between processes. Every state change is
  a single Lua script so no two workers can hold the same task.
- InMemoryQueueBackend (memory_queue_repository): process-local, used when
  producers and workers share one process (the test suite).

Key layout (prefix configurable, default "coffeeshop:"):

    task:<id>                  task JSON
    task:<id>:status           hash: state, worker_id, lease_deadline,
                               retried, last_error, updated_at
    queue:<class>:scheduled    zset, score = process_at epoch
    queue:<class>:active       zset, score = lease deadline epoch
    queue:<class>:archived     zset, score = archive epoch

A lease that is not completed, retried or archived before its deadline is
handed back by recover_expired_leases() and counts as a failed attempt.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from redis.exceptions import NoScriptError, RedisError

from coffeeshop.core.config import settings
from coffeeshop.core.errors import QueueBackendError
from coffeeshop.infrastructure.redis.connection_factory import (
    RedisConnectionFactory,
    redis_connection_factory,
)
from coffeeshop.services.queues.tasks import QueueClass, TaskData, TaskStatus, utcnow

logger = logging.getLogger(__name__)

# Completed tasks are kept this long for inspection
COMPLETED_RETENTION_SECONDS = 86400

# Lease owner recorded while an expired lease is being recovered
RECOVERER_ID = "recoverer"


class QueueBackend(ABC):
    """Storage and state transitions for queued tasks."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    @abstractmethod
    async def enqueue(self, task: TaskData) -> None:
        """Persist a new task in the scheduled set of its queue class."""

    @abstractmethod
    async def claim(
        self, queue: QueueClass, worker_id: str, lease_grace_seconds: int
    ) -> Optional[TaskData]:
        """Atomically take the earliest due task of a class and lease it.

        The lease lasts the task's own timeout plus ``lease_grace_seconds``.
        """

    @abstractmethod
    async def complete(self, task: TaskData) -> bool:
        """Mark a task completed. Returns False if its lease was already lost."""

    @abstractmethod
    async def retry(self, task: TaskData, delay_seconds: float) -> bool:
        """Release the lease and schedule the task again after a delay.

        The caller has already updated ``retried`` and ``last_error``.
        """

    @abstractmethod
    async def archive(self, task: TaskData) -> bool:
        """Release the lease and move the task to the archived set."""

    @abstractmethod
    async def recover_expired_leases(
        self, queue: QueueClass, lease_seconds: int
    ) -> List[TaskData]:
        """Hand out tasks whose lease deadline passed.

        The returned tasks are re-leased to the recoverer for ``lease_seconds``
        so that a crash during recovery only delays them.
        """

    @abstractmethod
    async def get_task(self, task_id: UUID) -> Optional[TaskData]:
        """Get task data by ID."""

    @abstractmethod
    async def get_status(self, task_id: UUID) -> Optional[Dict[str, str]]:
        """Get the execution record of a task."""

    @abstractmethod
    async def list_archived(
        self, queue: QueueClass, limit: int = 100
    ) -> List[TaskData]:
        """List archived tasks, most recently archived first."""

    @abstractmethod
    async def delete_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        """Remove a task from the archive for good."""

    @abstractmethod
    async def requeue_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        """Move an archived task back to scheduled with a fresh retry budget."""

    @abstractmethod
    async def queue_stats(self, queue: QueueClass) -> Dict[str, int]:
        """Count scheduled, active and archived tasks of a class."""

    async def close(self) -> None:
        """Release backend resources."""


# Atomic enqueue
ENQUEUE_SCRIPT = """
local task_key = KEYS[1]
local status_key = KEYS[2]
local scheduled_key = KEYS[3]

redis.call('SET', task_key, ARGV[1])
redis.call('HSET', status_key,
    'state', 'scheduled',
    'worker_id', '',
    'lease_deadline', '',
    'retried', '0',
    'last_error', '',
    'updated_at', ARGV[4]
)
redis.call('ZADD', scheduled_key, ARGV[2], ARGV[3])

return 1
"""

# Atomic claim of the earliest due task
CLAIM_SCRIPT = """
local scheduled_key = KEYS[1]
local active_key = KEYS[2]
local now_score = tonumber(ARGV[1])
local grace = tonumber(ARGV[2])
local worker_id = ARGV[3]
local prefix = ARGV[4]

local ids = redis.call('ZRANGEBYSCORE', scheduled_key, '-inf', ARGV[1], 'LIMIT', 0, 1)
if #ids == 0 then
    return false
end

local task_id = ids[1]
local task_key = prefix .. 'task:' .. task_id
local data = redis.call('GET', task_key)

redis.call('ZREM', scheduled_key, task_id)
if not data then
    return false
end

-- Lease covers the task's own deadline plus the grace period
local timeout = tonumber(cjson.decode(data)['timeout_seconds']) or 0
local lease_deadline = now_score + timeout + grace

redis.call('ZADD', active_key, lease_deadline, task_id)
redis.call('HSET', task_key .. ':status',
    'state', 'active',
    'worker_id', worker_id,
    'lease_deadline', tostring(lease_deadline),
    'updated_at', ARGV[5]
)

return data
"""

# Atomic completion
COMPLETE_SCRIPT = """
local task_key = KEYS[1]
local status_key = KEYS[2]
local active_key = KEYS[3]
local scheduled_key = KEYS[4]
local task_id = ARGV[1]

local held = redis.call('ZREM', active_key, task_id)
redis.call('ZREM', scheduled_key, task_id)
redis.call('HSET', status_key,
    'state', 'completed',
    'worker_id', '',
    'lease_deadline', '',
    'updated_at', ARGV[2]
)
redis.call('EXPIRE', task_key, ARGV[3])
redis.call('EXPIRE', status_key, ARGV[3])

return held
"""

# Atomic retry: release lease, rewrite task, schedule again
RETRY_SCRIPT = """
local task_key = KEYS[1]
local status_key = KEYS[2]
local active_key = KEYS[3]
local scheduled_key = KEYS[4]
local task_id = ARGV[2]

local held = redis.call('ZREM', active_key, task_id)
redis.call('SET', task_key, ARGV[1])
redis.call('ZADD', scheduled_key, ARGV[3], task_id)
redis.call('HSET', status_key,
    'state', 'retrying',
    'worker_id', '',
    'lease_deadline', '',
    'retried', ARGV[5],
    'last_error', ARGV[6],
    'updated_at', ARGV[4]
)

return held
"""

# Atomic archive
ARCHIVE_SCRIPT = """
local task_key = KEYS[1]
local status_key = KEYS[2]
local active_key = KEYS[3]
local scheduled_key = KEYS[4]
local archived_key = KEYS[5]
local task_id = ARGV[2]

local held = redis.call('ZREM', active_key, task_id)
redis.call('ZREM', scheduled_key, task_id)
redis.call('SET', task_key, ARGV[1])
redis.call('ZADD', archived_key, ARGV[3], task_id)
redis.call('HSET', status_key,
    'state', 'archived',
    'worker_id', '',
    'lease_deadline', '',
    'retried', ARGV[5],
    'last_error', ARGV[6],
    'updated_at', ARGV[4]
)

return held
"""

# Re-lease every expired task to the recoverer and return their data
RECOVER_SCRIPT = """
local active_key = KEYS[1]
local now_score = ARGV[1]
local new_deadline = ARGV[2]
local prefix = ARGV[3]

local ids = redis.call('ZRANGEBYSCORE', active_key, '-inf', now_score)
local recovered = {}

for _, task_id in ipairs(ids) do
    local task_key = prefix .. 'task:' .. task_id
    redis.call('ZADD', active_key, new_deadline, task_id)
    redis.call('HSET', task_key .. ':status',
        'worker_id', ARGV[5],
        'lease_deadline', new_deadline,
        'updated_at', ARGV[4]
    )
    local data = redis.call('GET', task_key)
    if data then
        table.insert(recovered, data)
    end
end

return recovered
"""

SCRIPTS = {
    "enqueue": ENQUEUE_SCRIPT,
    "claim": CLAIM_SCRIPT,
    "complete": COMPLETE_SCRIPT,
    "retry": RETRY_SCRIPT,
    "archive": ARCHIVE_SCRIPT,
    "recover": RECOVER_SCRIPT,
}


def _score(moment: datetime) -> str:
    return repr(moment.timestamp())


class RedisQueueBackend(QueueBackend):
    """
    Redis implementation of the queue backend.

    Scripts are loaded once with SCRIPT LOAD and invoked with EVALSHA. A
    server restart flushes the script cache, so a NOSCRIPT reply triggers one
    reload.
    """

    def __init__(
        self,
        connection_factory: Optional[RedisConnectionFactory] = None,
        key_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(clock=clock)
        self._redis_factory = connection_factory or redis_connection_factory
        self.key_prefix = key_prefix if key_prefix is not None else settings.REDIS_KEY_PREFIX
        self._lua_scripts: Dict[str, str] = {}

    async def initialize(self) -> None:
        """Initialize repository and load Lua scripts."""
        try:
            await self._load_lua_scripts()
            logger.info("Queue repository initialized successfully")

        except RedisError as e:
            logger.error(f"Failed to initialize queue repository: {e}")
            raise QueueBackendError(
                "Failed to load queue scripts", original_error=e
            )

    async def _load_lua_scripts(self) -> None:
        """Load Redis Lua scripts for atomic queue operations."""
        async with self._redis_factory.get_connection() as redis_client:
            for name, script in SCRIPTS.items():
                self._lua_scripts[name] = await redis_client.script_load(script)

    def _task_key(self, task_id: Any) -> str:
        return f"{self.key_prefix}task:{task_id}"

    def _status_key(self, task_id: Any) -> str:
        return f"{self.key_prefix}task:{task_id}:status"

    def _queue_key(self, queue: QueueClass, state: str) -> str:
        return f"{self.key_prefix}queue:{queue.value}:{state}"

    async def _run_script(self, name: str, keys: List[str], args: List[Any]):
        if not self._lua_scripts:
            await self.initialize()

        async with self._redis_factory.get_connection() as redis_client:
            try:
                try:
                    return await redis_client.evalsha(
                        self._lua_scripts[name], len(keys), *keys, *args
                    )
                except NoScriptError:
                    logger.warning(f"Lua script '{name}' missing on server, reloading")
                    self._lua_scripts[name] = await redis_client.script_load(
                        SCRIPTS[name]
                    )
                    return await redis_client.evalsha(
                        self._lua_scripts[name], len(keys), *keys, *args
                    )
            except QueueBackendError:
                raise
            except RedisError as e:
                logger.error(f"Queue script '{name}' failed: {e}")
                raise QueueBackendError(
                    f"Queue operation '{name}' failed",
                    details={"operation": name},
                    original_error=e,
                )

    async def enqueue(self, task: TaskData) -> None:
        await self._run_script(
            "enqueue",
            [
                self._task_key(task.task_id),
                self._status_key(task.task_id),
                self._queue_key(task.queue, "scheduled"),
            ],
            [
                task.model_dump_json(),
                _score(task.process_at),
                str(task.task_id),
                self.clock().isoformat(),
            ],
        )

    async def claim(
        self, queue: QueueClass, worker_id: str, lease_grace_seconds: int
    ) -> Optional[TaskData]:
        now = self.clock()

        task_json = await self._run_script(
            "claim",
            [self._queue_key(queue, "scheduled"), self._queue_key(queue, "active")],
            [
                _score(now),
                lease_grace_seconds,
                worker_id,
                self.key_prefix,
                now.isoformat(),
            ],
        )

        if not task_json:
            return None

        return TaskData.model_validate_json(task_json)

    async def complete(self, task: TaskData) -> bool:
        held = await self._run_script(
            "complete",
            [
                self._task_key(task.task_id),
                self._status_key(task.task_id),
                self._queue_key(task.queue, "active"),
                self._queue_key(task.queue, "scheduled"),
            ],
            [str(task.task_id), self.clock().isoformat(), COMPLETED_RETENTION_SECONDS],
        )
        return bool(held)

    async def retry(self, task: TaskData, delay_seconds: float) -> bool:
        now = self.clock()
        task.process_at = now + timedelta(seconds=delay_seconds)

        held = await self._run_script(
            "retry",
            [
                self._task_key(task.task_id),
                self._status_key(task.task_id),
                self._queue_key(task.queue, "active"),
                self._queue_key(task.queue, "scheduled"),
            ],
            [
                task.model_dump_json(),
                str(task.task_id),
                _score(task.process_at),
                now.isoformat(),
                task.retried,
                task.last_error or "",
            ],
        )
        return bool(held)

    async def archive(self, task: TaskData) -> bool:
        now = self.clock()

        held = await self._run_script(
            "archive",
            [
                self._task_key(task.task_id),
                self._status_key(task.task_id),
                self._queue_key(task.queue, "active"),
                self._queue_key(task.queue, "scheduled"),
                self._queue_key(task.queue, "archived"),
            ],
            [
                task.model_dump_json(),
                str(task.task_id),
                _score(now),
                now.isoformat(),
                task.retried,
                task.last_error or "",
            ],
        )
        return bool(held)

    async def recover_expired_leases(
        self, queue: QueueClass, lease_seconds: int
    ) -> List[TaskData]:
        now = self.clock()
        deadline = now + timedelta(seconds=lease_seconds)

        recovered = await self._run_script(
            "recover",
            [self._queue_key(queue, "active")],
            [
                _score(now),
                _score(deadline),
                self.key_prefix,
                now.isoformat(),
                RECOVERER_ID,
            ],
        )
        return [TaskData.model_validate_json(item) for item in recovered or []]

    async def get_task(self, task_id: UUID) -> Optional[TaskData]:
        async with self._redis_factory.get_connection() as redis_client:
            task_json = await redis_client.get(self._task_key(task_id))

        if not task_json:
            return None
        return TaskData.model_validate_json(task_json)

    async def get_status(self, task_id: UUID) -> Optional[Dict[str, str]]:
        async with self._redis_factory.get_connection() as redis_client:
            status = await redis_client.hgetall(self._status_key(task_id))
        return status or None

    async def list_archived(
        self, queue: QueueClass, limit: int = 100
    ) -> List[TaskData]:
        async with self._redis_factory.get_connection() as redis_client:
            task_ids = await redis_client.zrevrange(
                self._queue_key(queue, "archived"), 0, limit - 1
            )
            if not task_ids:
                return []
            payloads = await redis_client.mget(
                [self._task_key(task_id) for task_id in task_ids]
            )

        return [TaskData.model_validate_json(item) for item in payloads if item]

    async def delete_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        async with self._redis_factory.get_connection() as redis_client:
            removed = await redis_client.zrem(
                self._queue_key(queue, "archived"), str(task_id)
            )
            if removed:
                await redis_client.delete(
                    self._task_key(task_id), self._status_key(task_id)
                )
        return bool(removed)

    async def requeue_archived(self, queue: QueueClass, task_id: UUID) -> bool:
        async with self._redis_factory.get_connection() as redis_client:
            removed = await redis_client.zrem(
                self._queue_key(queue, "archived"), str(task_id)
            )
            if not removed:
                return False
            task_json = await redis_client.get(self._task_key(task_id))

        if not task_json:
            return False

        task = TaskData.model_validate_json(task_json)
        task.retried = 0
        task.last_error = None
        task.process_at = self.clock()
        await self.enqueue(task)
        return True

    async def queue_stats(self, queue: QueueClass) -> Dict[str, int]:
        async with self._redis_factory.get_connection() as redis_client:
            scheduled = await redis_client.zcard(self._queue_key(queue, "scheduled"))
            active = await redis_client.zcard(self._queue_key(queue, "active"))
            archived = await redis_client.zcard(self._queue_key(queue, "archived"))

        return {
            TaskStatus.SCHEDULED.value: scheduled,
            TaskStatus.ACTIVE.value: active,
            TaskStatus.ARCHIVED.value: archived,
        }

    async def close(self) -> None:
        await self._redis_factory.close()
