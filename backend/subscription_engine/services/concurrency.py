"""
Per-subscription write serialization.

WHAT: A registry of asyncio locks keyed by organization, and a runner that
executes a load-mutate-save operation under the lock, retrying it when
the optimistic version check fails.

WHY: A webhook update can race a user cancellation, and two scheduler
runs can overlap. Within one process the lock makes writers to the same
subscription take turns. Across processes the version column catches
the race, and the operation is re-run against a fresh snapshot.

HOW: Keys are organization ids, there is one subscription per
organization. Operations must reload the aggregate on every attempt.
"""

import asyncio
import logging
import weakref
from typing import Awaitable, Callable, TypeVar

from subscription_engine.core.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SubscriptionLocks:
    """
    Lazily created asyncio locks, one per key.

    NOTE: Locks are held weakly, a key's lock disappears once no
    operation is using it.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


async def run_serialized(
    locks: SubscriptionLocks,
    key: str,
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
) -> T:
    """
    Run operation under the key's lock, retrying on version conflicts.

    Args:
        locks: Shared lock registry
        key: Organization id of the subscription being written
        operation: Zero-argument coroutine function doing one full
            load-mutate-save cycle in its own unit of work
        max_retries: Total attempts before the conflict is surfaced

    Raises:
        ConcurrencyConflictError: If every attempt hit a conflict
    """
    attempts = max(1, max_retries)
    async with locks.lock_for(str(key)):
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except ConcurrencyConflictError:
                if attempt == attempts:
                    logger.error(
                        f"Giving up on subscription write for {key} after {attempts} conflicts",
                        extra={"org_id": key, "attempts": attempts},
                    )
                    raise
                logger.info(
                    f"Version conflict writing subscription for {key}, retrying ({attempt}/{attempts})",
                    extra={"org_id": key, "attempt": attempt},
                )
                # Let the competing writer's transaction finish
                await asyncio.sleep(0)
    raise ConcurrencyConflictError(org_id=key)  # pragma: no cover
