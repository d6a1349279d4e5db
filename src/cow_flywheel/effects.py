"""Best-effort side effects and the per-job overlap lock.

Side effects (event publication for external notifiers) run as detached
tasks: a failing or slow publisher is logged and never blocks or fails
the job that emitted the event. `drain` waits for outstanding tasks with
a timeout before the invocation returns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT_SECONDS = 5.0
DEFAULT_LOCK_PREFIX = "cow_flywheel:lock:"

EventPublisher = Callable[[str, dict[str, Any]], Awaitable[None]]


def _json_default(x: object) -> str:
    if isinstance(x, datetime):
        return x.isoformat()
    return str(x)


class RedisEventPublisher:
    """Publishes pipeline events as JSON on a Redis pub/sub channel."""

    def __init__(self, redis: Redis, *, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        message = {"type": event_type, "ts": datetime.now(UTC).isoformat(), **payload}
        await self._redis.publish(self._channel, json.dumps(message, default=_json_default))


class BackgroundEffects:
    """Runs fire-and-forget side effects with their own error logging.

    Example:
        ```python
        effects = BackgroundEffects(RedisEventPublisher(redis, channel="events"))
        effects.publish("order_filled", {"order_uid": uid})
        await effects.drain()
        ```
    """

    def __init__(
        self,
        publisher: EventPublisher | None = None,
        *,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._publisher = publisher
        self._drain_timeout = drain_timeout
        self._tasks: set[asyncio.Task[None]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Schedule an event; returns immediately."""
        if self._publisher is None:
            logger.debug("No event publisher configured; dropping %s", event_type)
            return
        task = asyncio.get_running_loop().create_task(self._run(self._publisher, event_type, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, publisher: EventPublisher, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await publisher(event_type, payload)
        except Exception as e:
            self.failures += 1
            logger.warning("Side effect %s failed: %s", event_type, e)

    async def drain(self) -> None:
        """Wait for outstanding side effects, cancelling any that overrun."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=self._drain_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d side effects still running after %.1fs", len(pending), self._drain_timeout)


class JobLock:
    """Advisory `SET NX EX` lock that stops overlapping runs of the same job.

    The database constraints remain the correctness guarantee; the lock
    only avoids wasted upstream calls when a slow run overlaps the next
    scheduled trigger.
    """

    def __init__(self, redis: Redis, *, ttl_seconds: int, key_prefix: str = DEFAULT_LOCK_PREFIX) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._key_prefix = key_prefix
        self._token = uuid.uuid4().hex

    def _key(self, job_name: str) -> str:
        return f"{self._key_prefix}{job_name}"

    async def acquire(self, job_name: str) -> bool:
        was_set = await self._redis.set(self._key(job_name), self._token, nx=True, ex=self._ttl)
        return bool(was_set)

    async def release(self, job_name: str) -> None:
        """Delete the lock if this instance still holds it."""
        key = self._key(job_name)
        held = await self._redis.get(key)
        if held is not None and (held.decode() if isinstance(held, bytes) else held) == self._token:
            await self._redis.delete(key)
