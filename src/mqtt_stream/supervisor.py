"""
Session Supervisor: the reconnect loop.

Runs one BridgeSession after another until cancellation. A session that
breaks with a SessionError is logged and replaced; the previous session's
connection is always released before the next one connects.
"""
import asyncio
import logging
from typing import BinaryIO, Callable, Optional

import aiomqtt

from mqtt_stream.errors import SessionError
from mqtt_stream.line_source import LineSource
from mqtt_stream.models import StreamConfig
from mqtt_stream.session import BridgeSession, build_client

logger = logging.getLogger(__name__)


class Supervisor:
    config: StreamConfig
    lines: LineSource
    cancel: asyncio.Event
    attempts: int

    def __init__(self, config: StreamConfig, lines: LineSource, cancel: asyncio.Event,
                 output: Optional[BinaryIO] = None,
                 client_factory: Callable[[StreamConfig], aiomqtt.Client] = build_client):
        self.config = config
        self.lines = lines
        self.cancel = cancel
        self.output = output
        self.client_factory = client_factory
        self.attempts = 0

    def new_session(self) -> BridgeSession:
        return BridgeSession(self.config, self.cancel, output=self.output, client_factory=self.client_factory)

    async def run(self):
        """
        Returns once cancelled or after a session ended cleanly. Anything
        other than a SessionError propagates to the caller.
        """
        while not self.cancel.is_set():
            self.attempts += 1
            logger.debug(f"connecting to {self.config.host}...")
            session = self.new_session()
            try:
                await session.run(self.lines)
            except SessionError as e:
                if self.cancel.is_set():
                    break
                logger.error(e)
                await self._pause()
                continue
            return
        logger.debug("supervisor cancelled.")

    async def _pause(self):
        """Waits reconnect_delay seconds, or less when cancelled meanwhile."""
        delay = self.config.reconnect_delay
        if delay <= 0:
            return
        logger.debug(f"reconnecting in {delay:g}s...")
        try:
            await asyncio.wait_for(self.cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
