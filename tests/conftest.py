"""
Pytest Configuration and Fixtures for the mqtt_stream project.

This module provides an in-memory stand-in for `aiomqtt.Client` so that
sessions and the supervisor can be exercised without a running broker.
"""

import asyncio
import io
import logging
import sys
from types import SimpleNamespace

import aiomqtt
import pytest
import pytest_asyncio

from mqtt_stream.line_source import LineSource
from mqtt_stream.models import StreamConfig

# --- Fake Broker Client ---

class FakeBroker:
    """
    Records what every client created through `factory` did, and lets
    tests inject failures.
    """
    def __init__(self):
        self.clients = []
        self.published = []  # (topic, payload)
        self.active = 0
        self.max_active = 0
        self.disconnects = 0
        self.connect_errors = []  # popped one per connect attempt
        self.connect_hang = False
        self.subscribe_error = None
        self.publish_error = None

    def factory(self, config: StreamConfig) -> "FakeClient":
        client = FakeClient(self, config)
        self.clients.append(client)
        return client

    @property
    def last(self) -> "FakeClient":
        return self.clients[-1]


class FakeClient:
    """Implements the slice of aiomqtt.Client the session uses."""
    def __init__(self, broker: FakeBroker, config: StreamConfig):
        self.broker = broker
        self.config = config
        self.connected = False
        self.subscriptions = []
        self.inbound = asyncio.Queue()

    async def __aenter__(self):
        if self.broker.connect_errors:
            raise self.broker.connect_errors.pop(0)
        if self.broker.connect_hang:
            await asyncio.Event().wait()
        self.connected = True
        self.broker.active += 1
        self.broker.max_active = max(self.broker.max_active, self.broker.active)
        return self

    async def __aexit__(self, *exc_info):
        if self.connected:
            self.connected = False
            self.broker.active -= 1
            self.broker.disconnects += 1
        return None

    async def subscribe(self, topic, qos=0, **kwargs):
        if self.broker.subscribe_error is not None:
            raise self.broker.subscribe_error
        self.subscriptions.append(topic)

    async def publish(self, topic, payload=None, qos=0, retain=False, **kwargs):
        if self.broker.publish_error is not None:
            raise self.broker.publish_error
        self.broker.published.append((topic, payload))

    @property
    def messages(self):
        return self._messages()

    async def _messages(self):
        while True:
            item = await self.inbound.get()
            if isinstance(item, Exception):
                raise item
            yield SimpleNamespace(topic=self.config.from_topic, payload=item)

    def deliver(self, payload: bytes):
        """Simulates a message arriving on the subscribed topic."""
        self.inbound.put_nowait(payload)

    def drop(self):
        """Simulates the broker connection going away."""
        self.inbound.put_nowait(aiomqtt.MqttError("Disconnected during message iteration"))


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Polls ``predicate`` until it is true or fails the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


# --- Fixtures ---

@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def config():
    """Config with short timeouts so failure paths finish quickly."""
    return StreamConfig(
        host="tcp://localhost:1883",
        from_topic="bar",
        to_topic="foo",
        client_id="mqtt-stream-test",
        operation_timeout=1.0,
    )


@pytest.fixture
def output():
    return io.BytesIO()


@pytest_asyncio.fixture
async def lines():
    """
    A LineSource whose reader thread is never started; tests feed
    `lines.lines` directly.
    """
    source = LineSource(async_loop=None, stream=io.BytesIO())
    yield source
    source.stop()
