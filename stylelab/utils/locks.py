"""
Round locks - at most one worker advances a given optimization round.

The lock is a Redis key (stylelab:lock:round:<id>) set with NX and a TTL and
holding a random owner token. Two callers take it:

- process_due_round() holds it for a whole advance (segment and send, or
  analyze). It waits briefly, and a round still locked after that is left for
  the next scan.
- The stale-round sweep takes it with wait=0. A round whose lock is held
  belongs to a live worker and is not swept; once a dead worker's lock
  expires, the sweep may fail the round.

The TTL must outlast the slowest advance (sending a large round), and the
sweep timeout must outlast the TTL.

When Redis is unreachable the lock is skipped; the conditional status claim
in services/round_state.py still lets only one worker move a round.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 900
LOCK_WAIT_SECONDS = 0.5
LOCK_POLL_INTERVAL = 0.1

# Deletes the key only while it still holds our token
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockTimeoutError(Exception):
    """Another worker holds the round lock."""


def round_lock_key(round_id) -> str:
    return f"stylelab:lock:round:{round_id}"


@asynccontextmanager
async def round_lock(
    round_id,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
):
    """
    Hold the lock for one round while the body runs.

    Args:
        round_id: the optimization round to lock.
        ttl: seconds before Redis drops the lock if this worker dies.
        wait: seconds to keep retrying a held lock; 0 tries once.

    Raises:
        LockTimeoutError: the lock is still held by someone else after `wait`.

    Usage:
        async with round_lock(round_id):
            await start_round(db, round_id)
    """
    key = round_lock_key(round_id)
    token = uuid.uuid4().hex

    if not await _acquire_lock(key, token, ttl, wait):
        raise LockTimeoutError(
            f"Round {str(round_id)[:8]} is locked by another worker (waited {wait}s)"
        )
    try:
        yield
    finally:
        await _release_lock(key, token)


async def _acquire_lock(key: str, value: str, ttl: int, wait: float) -> bool:
    """SET NX, retried every LOCK_POLL_INTERVAL until `wait` runs out."""
    try:
        from stylelab.utils.redis import get_redis
        redis = await get_redis()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while True:
            if await redis.set(key, value, nx=True, ex=ttl):
                return True
            if loop.time() >= deadline:
                break
            await asyncio.sleep(LOCK_POLL_INTERVAL)

        logger.info("Round lock %s busy after %.1fs", key, wait)
        return False
    except Exception as e:
        logger.warning("Redis unavailable for %s: %s. Relying on the status claim.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    try:
        from stylelab.utils.redis import get_redis
        redis = await get_redis()
        released = await redis.eval(RELEASE_SCRIPT, 1, key, value)
        if not released:
            logger.warning("Round lock %s expired before release", key)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))
