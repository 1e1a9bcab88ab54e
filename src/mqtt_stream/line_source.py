"""
Stdin Line Source and its Sync/Async bridge.

This module contains the `LineSource` class, which is responsible for:
- Running a dedicated reader thread that blocks on the input stream.
- Handing every line to the asyncio loop through a single-slot queue.
  The reader waits until the control loop has taken that line, so at most
  one line is read ahead of the consumer (back-pressure).
- Reporting read errors and end-of-stream, then stopping for good.
- Keeping the "next line" future alive across control loop iterations
  and sessions, so no line is consumed twice or dropped.
"""
import asyncio
import concurrent.futures
import logging
import sys
import threading
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)


def strip_line_ending(data: bytes) -> bytes:
    """Drops a trailing ``\\n`` or ``\\r\\n``."""
    if data.endswith(b"\n"):
        data = data[:-1]
        if data.endswith(b"\r"):
            data = data[:-1]
    return data


class LineSource:
    async_loop: asyncio.AbstractEventLoop
    stream: BinaryIO
    lines: asyncio.Queue
    poll_interval: float

    _reader_thread: Optional[threading.Thread]
    _reader_running: threading.Event
    _pending: Optional[asyncio.Future]

    """
    Reads lines from a binary stream on a worker thread and exposes them
    to the event loop in order.
    """
    def __init__(self, async_loop: asyncio.AbstractEventLoop, stream: Optional[BinaryIO] = None, poll_interval: float = 0.1):
        self.async_loop = async_loop
        self.stream = stream if stream is not None else sys.stdin.buffer
        self.lines = asyncio.Queue(maxsize=1)
        self.poll_interval = poll_interval
        self._reader_thread = None
        self._reader_running = threading.Event()
        self._pending = None

    def start(self):
        """
        Starts the reader thread if it's not already running.
        """
        if self._reader_thread is None or not self._reader_thread.is_alive():
            self._reader_running.set()
            self._reader_thread = threading.Thread(target=self._read_loop, name="StdinReader", daemon=True)
            self._reader_thread.start()
            logger.debug("stdin reader thread started.")
        else:
            logger.warning("Attempted to start stdin reader, but it's already running.")

    def stop(self):
        """
        Signals the reader thread to stop and drops the pending line future.

        The thread is not joined: a read blocked on stdin cannot be
        interrupted, and the thread is a daemon.
        """
        self._reader_running.clear()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    @property
    def running(self) -> bool:
        return self._reader_thread is not None and self._reader_thread.is_alive()

    def next_line(self) -> asyncio.Future:
        """
        Returns a future resolving to the next line.

        The same future is returned until `take()` consumes its result.
        Must be called from the event loop thread.
        """
        if self._pending is None:
            self._pending = asyncio.ensure_future(self.lines.get())
        return self._pending

    def take(self) -> bytes:
        """Consumes the line of a completed `next_line()` future."""
        pending, self._pending = self._pending, None
        if pending is None:
            raise RuntimeError("take() called without a pending line")
        line = pending.result()
        # releases the reader blocked in _deliver
        self.lines.task_done()
        return line

    def _read_loop(self):
        """
        The reader thread: read a line, hand it off, repeat until
        stopped or the stream fails.
        """
        while self._reader_running.is_set():
            try:
                data = self.stream.readline()
            except (OSError, ValueError) as e:
                logger.error(f"error reading stdin: {e}")
                break
            if not data:
                logger.error("error reading stdin: end of stream")
                break
            if not self._hand_off(strip_line_ending(data)):
                break

        self._reader_running.clear()
        logger.debug("stdin reader thread stopped.")

    async def _deliver(self, line: bytes):
        await self.lines.put(line)
        await self.lines.join()

    def _hand_off(self, line: bytes) -> bool:
        """
        Blocks until the control loop took the line. Returns False
        when stopped (or the loop went away) before that happened.
        """
        try:
            future = asyncio.run_coroutine_threadsafe(self._deliver(line), self.async_loop)
        except RuntimeError:
            # event loop already closed
            return False

        while True:
            try:
                future.result(timeout=self.poll_interval)
                return True
            except concurrent.futures.TimeoutError:
                if not self._reader_running.is_set():
                    future.cancel()
                    return False
            except concurrent.futures.CancelledError:
                return False
