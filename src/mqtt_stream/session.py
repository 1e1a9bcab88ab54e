"""
Bridge Session: one broker connection and its subscription.

This module is responsible for:
- Building an `aiomqtt` client from the StreamConfig.
- Connecting and subscribing, each bounded by `wait`.
- Printing (and optionally echoing) every message on the subscribed topic.
- Publishing stdin lines, hex-decoded when hex mode is on.
- The control loop that multiplexes cancellation, connection loss and
  stdin lines while the session is active.
- Releasing the connection on every exit path.
"""
import asyncio
import binascii
import logging
import ssl
import sys
from contextlib import AsyncExitStack
from typing import Any, Awaitable, BinaryIO, Callable, Optional

import aiomqtt

from mqtt_stream.errors import (ConnectError, ConnectionLostError, HexDecodeError, OperationCancelled,
                                SubscribeError)
from mqtt_stream.line_source import LineSource
from mqtt_stream.models import SessionState, StreamConfig
from mqtt_stream.waiting import POLL_INTERVAL, discard, wait

logger = logging.getLogger(__name__)

QOS = 0
DISCONNECT_GRACE = 1.0  # seconds

MessageHandler = Callable[[bytes], Awaitable[None]]


def build_client(config: StreamConfig) -> aiomqtt.Client:
    """Creates an unconnected aiomqtt client for the configured broker."""
    broker = config.broker
    kwargs: dict[str, Any] = {
        "hostname": broker.hostname,
        "port": broker.port,
        "identifier": config.client_id,
        "transport": broker.transport,
        "username": config.username or None,
        "password": config.password or None,
    }
    if broker.tls:
        kwargs["tls_context"] = ssl.create_default_context()
    if broker.websocket_path:
        kwargs["websocket_path"] = broker.websocket_path
    return aiomqtt.Client(**kwargs)


class BridgeSession:
    config: StreamConfig
    cancel: asyncio.Event
    output: BinaryIO
    state: SessionState
    client: Optional[aiomqtt.Client]
    connection_lost: asyncio.Queue

    _exit_stack: AsyncExitStack
    _connect_task: Optional[asyncio.Future]
    _connecting_client: Optional[aiomqtt.Client]
    _delivery_task: Optional[asyncio.Task]

    """
    Connects once, subscribes once and serves until cancelled or broken.
    A session is never reused; the supervisor creates a new one per attempt.
    """
    def __init__(self, config: StreamConfig, cancel: asyncio.Event, output: Optional[BinaryIO] = None,
                 client_factory: Callable[[StreamConfig], aiomqtt.Client] = build_client,
                 poll_interval: float = POLL_INTERVAL):
        self.config = config
        self.cancel = cancel
        self.output = output if output is not None else sys.stdout.buffer
        self.client_factory = client_factory
        self.poll_interval = poll_interval

        self.state = SessionState.CONNECTING
        self.client = None
        # Holds at most one connection-lost error.
        self.connection_lost = asyncio.Queue(maxsize=1)

        self._exit_stack = AsyncExitStack()
        self._connect_task = None
        self._connecting_client = None
        self._delivery_task = None

    async def run(self, lines: LineSource):
        """
        Connect, subscribe and serve. Returns normally only on cancellation;
        raises a SessionError when the session broke.
        """
        try:
            await self.connect()
            await self.subscribe(self.handle_message)
            await self.serve(lines)
        finally:
            self.state = SessionState.TERMINATING
            await self.close()

    async def _wait(self, operation: Any) -> Any:
        return await wait(self.cancel, operation, timeout=self.config.operation_timeout, poll_interval=self.poll_interval)

    async def connect(self) -> aiomqtt.Client:
        self.state = SessionState.CONNECTING
        client = self.client_factory(self.config)
        # Released by the exit stack once connected, otherwise by close() directly.
        self._connecting_client = client
        self._connect_task = asyncio.ensure_future(self._exit_stack.enter_async_context(client))
        try:
            await self._wait(self._connect_task)
        except (aiomqtt.MqttError, OSError, OperationCancelled) as e:
            raise ConnectError(f"connect failed: {e}") from e

        self.client = client
        logger.debug("connected!")
        return client

    async def subscribe(self, on_message: MessageHandler):
        """
        Subscribes to the "from" topic and starts delivering its messages
        to ``on_message`` on a background task.
        """
        self.state = SessionState.SUBSCRIBING
        try:
            await self._wait(self.client.subscribe(self.config.from_topic, qos=QOS))
        except (aiomqtt.MqttError, OperationCancelled) as e:
            raise SubscribeError(f"subscribe failed: {e}") from e

        self._delivery_task = asyncio.create_task(self._deliver(on_message), name="MessageDelivery")
        logger.debug(f"subscribed to {self.config.from_topic}, publishing to {self.config.to_topic}")

    async def _deliver(self, on_message: MessageHandler):
        """Runs until the connection drops, then signals connection loss."""
        try:
            async for message in self.client.messages:
                await on_message(message.payload)
        except aiomqtt.MqttError as e:
            self._signal_connection_lost(ConnectionLostError(f"connection lost: {e}"))
            return
        self._signal_connection_lost(ConnectionLostError("connection lost: message stream ended"))

    def _signal_connection_lost(self, error: ConnectionLostError):
        try:
            self.connection_lost.put_nowait(error)
        except asyncio.QueueFull:
            logger.debug(f"connection loss already signalled, dropping: {error}")

    async def handle_message(self, payload: bytes):
        """
        Prints one inbound message and echoes it when enabled.
        Never raises for output or publish failures.
        """
        text = payload.hex().encode("ascii") if self.config.hex else payload
        try:
            self.output.write(text + b"\n")
            self.output.flush()
        except (OSError, ValueError) as e:
            # ValueError: stdout already closed
            logger.error(f"error writing stdout: {e}")

        if not self.config.echo:
            return
        await self.publish(payload)

    async def publish_line(self, line: bytes):
        """
        Publishes one stdin line to the "to" topic.

        Raises HexDecodeError in hex mode when the line is not valid hex;
        nothing is published in that case.
        """
        payload = line
        if self.config.hex:
            try:
                payload = binascii.unhexlify(line)
            except (binascii.Error, ValueError) as e:
                raise HexDecodeError(f"invalid hex input {line!r}: {e}") from e
        await self.publish(payload)

    async def publish(self, payload: bytes):
        """Best-effort publish; failures are logged, never raised."""
        try:
            await self._wait(self.client.publish(self.config.to_topic, payload=payload, qos=QOS, retain=False))
        except (aiomqtt.MqttError, OperationCancelled) as e:
            logger.error(f"publish failed: {e}")

    async def serve(self, lines: LineSource):
        """
        The control loop. Handles exactly one event per iteration:
        cancellation ends the session cleanly, connection loss raises,
        a line gets published.
        """
        self.state = SessionState.ACTIVE
        while True:
            cancelled = asyncio.ensure_future(self.cancel.wait())
            lost = asyncio.ensure_future(self.connection_lost.get())
            line = lines.next_line()
            try:
                await asyncio.wait({cancelled, lost, line}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                # the line future stays pending for the next iteration
                for waiter in (cancelled, lost):
                    if not waiter.done():
                        waiter.cancel()

            if cancelled.done() and not cancelled.cancelled():
                logger.debug("session cancelled.")
                return
            if lost.done() and not lost.cancelled():
                raise lost.result()
            if line.done() and not line.cancelled():
                await self.publish_line(lines.take())

    async def close(self):
        """
        Releases the connection. Safe to call on any exit path and more
        than once.
        """
        if self._delivery_task is not None:
            self._delivery_task.cancel()
            await asyncio.wait({self._delivery_task})
            if not self._delivery_task.cancelled() and self._delivery_task.exception() is not None:
                logger.error(f"message delivery failed: {self._delivery_task.exception()!r}")
            self._delivery_task = None

        if self._connect_task is not None:
            if not self._connect_task.done():
                self._connect_task.cancel()
                await asyncio.wait({self._connect_task}, timeout=DISCONNECT_GRACE)
                discard(self._connect_task)
            if not self._connected():
                self._release_socket(self._connecting_client)
            self._connect_task = None
            self._connecting_client = None

        try:
            await asyncio.wait_for(self._exit_stack.aclose(), timeout=DISCONNECT_GRACE)
        except (aiomqtt.MqttError, OSError, asyncio.TimeoutError) as e:
            logger.debug(f"disconnect did not complete cleanly: {e!r}")
        self.client = None

    def _connected(self) -> bool:
        """True when the connect task finished and the exit stack owns the client."""
        task = self._connect_task
        return task.done() and not task.cancelled() and task.exception() is None

    @staticmethod
    def _release_socket(client: Optional[aiomqtt.Client]):
        """
        Closes the socket of a client whose connect failed or was abandoned.

        aiomqtt only disconnects clients that finished connecting; a
        half-open connection (no CONNACK yet) keeps its paho socket open.
        """
        paho_client = getattr(client, "_client", None)
        if paho_client is None:
            return
        logger.debug("closing socket of unfinished connect")
        paho_client._sock_close()
