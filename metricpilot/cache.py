"""
cache.py - Redis layer for active MetricPilot workflows.

Namespace conventions:
  workflow:{workflow_id}       → WorkflowState JSON           TTL settings.workflow_ttl_s
  lock:workflow:{workflow_id}  → in-flight action marker      TTL settings.workflow_lock_ttl_s

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param - no module-level global state
  - The lock is SET NX EX: at most one mutating action per workflow at a time,
    and a crashed worker cannot hold it past its TTL
  - Logs only workflow_id (not state values) - no product input in logs
"""
import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis

from metricpilot.config import settings
from metricpilot.errors import BusyError
from metricpilot.workflow.schemas import WorkflowState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
WORKFLOW_PREFIX = "workflow"
LOCK_PREFIX = "lock"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_workflow_key(workflow_id: str) -> str:
    """Build Redis key for cached workflow state: workflow:{workflow_id}"""
    return f"{WORKFLOW_PREFIX}:{workflow_id}"


def make_lock_key(workflow_id: str) -> str:
    """Build Redis key for the per-workflow action lock: lock:workflow:{workflow_id}"""
    return f"{LOCK_PREFIX}:{make_workflow_key(workflow_id)}"


# ---------------------------------------------------------------------------
# Pool factory - called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup - stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Workflow state helpers
# ---------------------------------------------------------------------------

async def get_workflow_state(
    client: aioredis.Redis, workflow_id: str
) -> Optional[WorkflowState]:
    """
    Retrieve cached workflow state.
    Returns None if the workflow expired or never existed.
    """
    raw = await client.get(make_workflow_key(workflow_id))
    if raw is None:
        return None
    return WorkflowState.model_validate_json(raw)


async def set_workflow_state(client: aioredis.Redis, state: WorkflowState) -> None:
    """
    Store workflow state with TTL.
    Overwrites the existing value and resets the TTL on every write.
    Durable copies are written separately through SessionStore.
    """
    key = make_workflow_key(state.workflow_id)
    await client.setex(key, settings.workflow_ttl_s, state.model_dump_json())
    logger.info(
        "Workflow state cached workflow_id=%s step=%s ttl=%ds",
        state.workflow_id, state.step.value, settings.workflow_ttl_s,
    )


async def delete_workflow_state(client: aioredis.Redis, workflow_id: str) -> None:
    await client.delete(make_workflow_key(workflow_id))
    logger.info("Workflow state evicted workflow_id=%s", workflow_id)


# ---------------------------------------------------------------------------
# Per-workflow action lock
# ---------------------------------------------------------------------------

# Compare-and-delete in one round trip: a lock that expired and was re-taken
# by another request is never released by the previous holder.
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def acquire_workflow_lock(client: aioredis.Redis, workflow_id: str) -> str:
    """
    Take the action lock for one workflow. Returns the lock token.
    Raises BusyError if another action already holds it.
    """
    token = str(uuid.uuid4())
    acquired = await client.set(
        make_lock_key(workflow_id), token, nx=True, ex=settings.workflow_lock_ttl_s,
    )
    if not acquired:
        logger.warning("Workflow busy workflow_id=%s", workflow_id)
        raise BusyError()
    return token


async def release_workflow_lock(client: aioredis.Redis, workflow_id: str, token: str) -> None:
    """Release the lock only if this caller still holds it."""
    released = await client.eval(RELEASE_LOCK_SCRIPT, 1, make_lock_key(workflow_id), token)
    if not released:
        logger.warning("Workflow lock already expired workflow_id=%s", workflow_id)
