"""
Durable storage for countdown workflow instances.

Layout in Redis:
    workflow:instance:<id>  JSON-encoded WorkflowInstance
    workflow:due            sorted set of runnable ids scored by resume_at
    workflow:lock:<id>      execution lease, one active run per instance

State changes go through ``compare_and_set``, a Lua script that writes
only if the stored state still equals the expected one. A late Cancel
therefore never overwrites a release in progress, and a step that lost
the race never overwrites a Cancel.
"""

import secrets
from datetime import datetime
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from afterlife.infrastructure.observability.logging import get_logger
from afterlife.models.domain.workflow_domain import WorkflowInstance, WorkflowState
from afterlife.services.redis_client import FastRedisClient, fast_redis
from afterlife.workflows.errors import InstanceNotFound, WorkflowStoreError

logger = get_logger(__name__)

INSTANCE_KEY_PREFIX = "workflow:instance"
LOCK_KEY_PREFIX = "workflow:lock"
DUE_INDEX_KEY = "workflow:due"

# KEYS: instance key, due index. ARGV: expected state, new json, score ('' = unschedule), id
COMPARE_AND_SET_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return -1
end
local current = cjson.decode(raw)
if current['state'] ~= ARGV[1] then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2])
if ARGV[3] == '' then
  redis.call('ZREM', KEYS[2], ARGV[4])
else
  redis.call('ZADD', KEYS[2], ARGV[3], ARGV[4])
end
return 1
"""

# KEYS: instance key, due index. ARGV: json, score, id
CREATE_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  return 0
end
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[3])
return 1
"""

RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class WorkflowRepository(Protocol):
    async def get(self, instance_id: str) -> WorkflowInstance | None: ...

    async def create(self, instance: WorkflowInstance) -> None: ...

    async def compare_and_set(
        self, instance: WorkflowInstance, expected_state: WorkflowState
    ) -> bool: ...

    async def due_ids(self, now: datetime, limit: int) -> list[str]: ...

    async def acquire_lock(self, instance_id: str, ttl_seconds: int) -> str | None: ...

    async def release_lock(self, instance_id: str, token: str) -> None: ...


def instance_key(instance_id: str) -> str:
    return f"{INSTANCE_KEY_PREFIX}:{instance_id}"


def lock_key(instance_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{instance_id}"


def due_score(instance: WorkflowInstance) -> str:
    """Sorted-set score for the due index; empty string unschedules."""
    if instance.is_terminal():
        return ""
    if instance.resume_at is None:
        return "0"
    return repr(instance.resume_at.timestamp())


class RedisWorkflowRepository:
    """WorkflowRepository backed by the pooled Redis client."""

    def __init__(self, redis_client: FastRedisClient | None = None):
        self._redis_client = redis_client or fast_redis

    async def _client(self) -> redis.Redis:
        return await self._redis_client.get_client()

    async def get(self, instance_id: str) -> WorkflowInstance | None:
        try:
            client = await self._client()
            raw = await client.get(instance_key(instance_id))
        except RedisError as e:
            logger.error("Redis GET failed", workflow_id=instance_id, error=str(e))
            raise WorkflowStoreError(f"Failed to load instance: {e}", operation="get") from e

        if not raw:
            return None
        return WorkflowInstance.model_validate_json(raw)

    async def create(self, instance: WorkflowInstance) -> None:
        try:
            client = await self._client()
            created = await client.eval(
                CREATE_SCRIPT,
                2,
                instance_key(instance.id),
                DUE_INDEX_KEY,
                instance.model_dump_json(),
                due_score(instance) or "0",
                instance.id,
            )
        except RedisError as e:
            logger.error("Redis create failed", workflow_id=instance.id, error=str(e))
            raise WorkflowStoreError(f"Failed to create instance: {e}", operation="create") from e

        if not created:
            raise WorkflowStoreError(
                f"Instance already exists: {instance.id}", operation="create", recoverable=False
            )

    async def compare_and_set(
        self, instance: WorkflowInstance, expected_state: WorkflowState
    ) -> bool:
        """
        Persist ``instance`` only if the stored state is ``expected_state``.

        Raises:
            InstanceNotFound: If no record exists for the instance id
            WorkflowStoreError: On Redis errors
        """
        try:
            client = await self._client()
            result = await client.eval(
                COMPARE_AND_SET_SCRIPT,
                2,
                instance_key(instance.id),
                DUE_INDEX_KEY,
                WorkflowState(expected_state).value,
                instance.model_dump_json(),
                due_score(instance),
                instance.id,
            )
        except RedisError as e:
            logger.error("Redis compare-and-set failed", workflow_id=instance.id, error=str(e))
            raise WorkflowStoreError(
                f"Failed to update instance: {e}", operation="compare_and_set"
            ) from e

        if int(result) == -1:
            raise InstanceNotFound(instance.id)
        return int(result) == 1

    async def due_ids(self, now: datetime, limit: int) -> list[str]:
        try:
            client = await self._client()
            return list(
                await client.zrangebyscore(
                    DUE_INDEX_KEY, "-inf", now.timestamp(), start=0, num=limit
                )
            )
        except RedisError as e:
            logger.error("Redis due lookup failed", error=str(e))
            raise WorkflowStoreError(f"Failed to list due instances: {e}", operation="due_ids") from e

    async def acquire_lock(self, instance_id: str, ttl_seconds: int) -> str | None:
        """Take the execution lease; None if another execution holds it."""
        token = secrets.token_urlsafe(16)
        try:
            client = await self._client()
            acquired = await client.set(lock_key(instance_id), token, nx=True, ex=ttl_seconds)
        except RedisError as e:
            raise WorkflowStoreError(f"Failed to acquire lock: {e}", operation="acquire_lock") from e
        return token if acquired else None

    async def release_lock(self, instance_id: str, token: str) -> None:
        try:
            client = await self._client()
            await client.eval(RELEASE_LOCK_SCRIPT, 1, lock_key(instance_id), token)
        except RedisError as e:
            # Lease expires on its own; do not mask the step result
            logger.warning("Failed to release workflow lock", workflow_id=instance_id, error=str(e))


# Singleton instance for application use
workflow_repository = RedisWorkflowRepository()
