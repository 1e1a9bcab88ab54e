"""
Bounded waits on pending broker operations.

aiomqtt operations are coroutines; the session starts each one as a task
(the pending operation) and blocks on it here. The wait polls the task on
a short interval so that cancellation is noticed within one interval, and
gives up after a per-call deadline. An abandoned operation keeps running
in the background; its outcome is only logged.
"""
import asyncio
import logging
from typing import Any, Awaitable, Union

from mqtt_stream.errors import OperationCancelled, OperationTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
POLL_INTERVAL = 0.5


def _log_discarded_outcome(operation: asyncio.Future):
    if operation.cancelled():
        return
    exc = operation.exception()
    if exc is not None:
        logger.debug(f"Abandoned broker operation failed later: {exc!r}")
    else:
        logger.debug("Abandoned broker operation completed later.")


def discard(operation: asyncio.Future):
    """Stops caring about an operation; its late outcome is only logged."""
    operation.add_done_callback(_log_discarded_outcome)


async def wait(cancel: asyncio.Event,
               operation: Union[asyncio.Future, Awaitable[Any]],
               timeout: float = DEFAULT_TIMEOUT,
               poll_interval: float = POLL_INTERVAL) -> Any:
    """
    Waits for a pending operation, bounded by ``timeout`` seconds and the
    ``cancel`` event.

    Returns the operation's result, re-raises its error, or raises
    OperationCancelled / OperationTimeout when it was given up on.
    """
    operation = asyncio.ensure_future(operation)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while not operation.done():
        if cancel.is_set():
            discard(operation)
            raise OperationCancelled("operation cancelled")
        remaining = deadline - loop.time()
        if remaining <= 0:
            discard(operation)
            raise OperationTimeout(f"operation timed out after {timeout:g}s")
        await asyncio.wait({operation}, timeout=min(poll_interval, remaining))

    if operation.cancelled():
        raise OperationCancelled("operation was cancelled before completing")
    return operation.result()
