from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union
import asyncio
import logging

from playdeck.core.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)

Primitive = Union[asyncio.Lock, asyncio.Semaphore]


class AcquireCancelled(Exception):
    """The waiter was cancelled before the lock or slot became free."""


async def acquire(primitive: Primitive, timeout: Optional[float] = None, cancel: Optional[asyncio.Event] = None) -> None:
    """Acquires `primitive`, giving up on timeout or when `cancel` is set.

    Raises:
        asyncio.TimeoutError: Not acquired within `timeout` seconds.
        AcquireCancelled: `cancel` was set first.
    """
    if cancel is None:
        await asyncio.wait_for(primitive.acquire(), timeout)
        return
    if cancel.is_set():
        raise AcquireCancelled()

    acquiring = asyncio.ensure_future(primitive.acquire())
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({acquiring, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not acquiring.done():
            acquiring.cancel()

    got_it = acquiring.done() and not acquiring.cancelled() and acquiring.exception() is None
    if got_it and not cancel.is_set():
        return
    if got_it:
        primitive.release()
    if cancel.is_set():
        raise AcquireCancelled()
    raise asyncio.TimeoutError()


class ServerLockTable:
    """Per-server mutual exclusion for SSH sessions.

    At most one run holds a given server at a time, so two playbooks never
    race on shared remote state such as the server's pre-command.
    """
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, server_id: str) -> asyncio.Lock:
        if server_id not in self._locks:
            self._locks[server_id] = asyncio.Lock()
        return self._locks[server_id]

    def is_held(self, server_id: str) -> bool:
        lock = self._locks.get(server_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(
        self,
        server_id: str,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[None]:
        """Holds the server's lock for the duration of the block.

        Raises:
            ConcurrencyError: The lock was not free within `timeout` seconds.
            AcquireCancelled: `cancel` was set while queueing.
        """
        lock = self._get_lock(server_id)
        if lock.locked():
            logger.info(f"Server {server_id} is busy, queueing (max wait {timeout}s)")
        try:
            await acquire(lock, timeout, cancel)
        except asyncio.TimeoutError:
            raise ConcurrencyError(
                f"Server is busy with another run; gave up after waiting {timeout}s",
                details={"server_id": server_id, "timeout": timeout},
            )
        try:
            yield
        finally:
            lock.release()


@asynccontextmanager
async def slot(semaphore: asyncio.Semaphore, cancel: Optional[asyncio.Event] = None) -> AsyncIterator[None]:
    """Holds one slot of the global execution pool; queues without bound."""
    await acquire(semaphore, None, cancel)
    try:
        yield
    finally:
        semaphore.release()
