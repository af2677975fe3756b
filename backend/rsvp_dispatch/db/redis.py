"""Redis client for per-job dispatch leases"""
import logging
import uuid
from typing import Optional

import redis

from rsvp_dispatch.core.config import settings, JOB_LEASE_KEY

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def acquire_lock(lock_key: str, timeout: int = 30, value: str = "1") -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)
        value: Value stored under the key, used to identify the holder

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, value, nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str, value: Optional[str] = None) -> None:
    """Release a distributed lock.

    When value is given the key is only deleted while it still holds that value,
    so a lease that expired and was taken over is left alone.
    """
    client = get_redis_client()
    if value is not None and client.get(lock_key) != value:
        logger.warning(f"Lock {lock_key} no longer held by this invocation, not releasing")
        return
    client.delete(lock_key)


def acquire_job_lease(job_id: str, timeout: int = None) -> Optional[str]:
    """Take the exclusive dispatch lease for a job.

    Returns:
        A lease token to pass to release_job_lease, or None if another
        invocation is already processing this job
    """
    token = uuid.uuid4().hex
    key = JOB_LEASE_KEY.format(job_id=job_id)
    if acquire_lock(key, timeout or settings.JOB_LEASE_SECONDS, value=token):
        return token
    return None


def release_job_lease(job_id: str, token: str) -> None:
    """Release the dispatch lease taken by acquire_job_lease"""
    release_lock(JOB_LEASE_KEY.format(job_id=job_id), value=token)
