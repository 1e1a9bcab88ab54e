import asyncio
import dataclasses

import aiomqtt
import pytest

from conftest import eventually
from mqtt_stream.supervisor import Supervisor

"""
Tests for the reconnect loop: retriable session errors start a new
session, cancellation ends the loop, and sessions never overlap.
"""


def make_supervisor(config, broker, output, lines, **overrides):
    config = dataclasses.replace(config, **overrides)
    return Supervisor(config, lines, asyncio.Event(), output=output, client_factory=broker.factory)


def connected(broker, count):
    return lambda: len(broker.clients) == count and broker.last.connected and broker.last.subscriptions


@pytest.mark.asyncio
async def test_connection_lost_starts_a_new_session(config, broker, output, lines):
    supervisor = make_supervisor(config, broker, output, lines)
    task = asyncio.create_task(supervisor.run())
    await eventually(connected(broker, 1))

    broker.last.drop()
    await eventually(connected(broker, 2))

    assert broker.max_active == 1
    assert broker.disconnects == 1

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=2.0)
    assert supervisor.attempts == 2


@pytest.mark.asyncio
async def test_invalid_hex_line_starts_a_new_session(config, broker, output, lines):
    supervisor = make_supervisor(config, broker, output, lines, hex=True)
    task = asyncio.create_task(supervisor.run())
    await eventually(connected(broker, 1))

    await lines.lines.put(b"zz")
    await eventually(connected(broker, 2))

    # the next line goes out on the new session
    await lines.lines.put(b"6869")
    await eventually(lambda: broker.published)

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=2.0)
    assert broker.published == [("foo", b"hi")]


@pytest.mark.asyncio
async def test_connect_errors_are_retried_immediately(config, broker, output, lines):
    broker.connect_errors = [aiomqtt.MqttError("refused"), aiomqtt.MqttError("refused")]
    supervisor = make_supervisor(config, broker, output, lines)
    task = asyncio.create_task(supervisor.run())

    await eventually(connected(broker, 3), timeout=1.0)

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=2.0)
    assert supervisor.attempts == 3


@pytest.mark.asyncio
async def test_sessions_never_overlap(config, broker, output, lines):
    supervisor = make_supervisor(config, broker, output, lines)
    task = asyncio.create_task(supervisor.run())

    for count in range(1, 5):
        await eventually(connected(broker, count))
        broker.last.drop()
    await eventually(connected(broker, 5))

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=2.0)
    assert broker.max_active == 1
    assert broker.active == 0


@pytest.mark.asyncio
async def test_cancellation_exits_cleanly(config, broker, output, lines):
    supervisor = make_supervisor(config, broker, output, lines)
    task = asyncio.create_task(supervisor.run())
    await eventually(connected(broker, 1))

    supervisor.cancel.set()
    assert await asyncio.wait_for(task, timeout=2.0) is None
    assert len(broker.clients) == 1
    assert broker.active == 0


@pytest.mark.asyncio
async def test_cancelled_before_start_never_connects(config, broker, output, lines):
    supervisor = make_supervisor(config, broker, output, lines)
    supervisor.cancel.set()

    await supervisor.run()

    assert broker.clients == []
    assert supervisor.attempts == 0


@pytest.mark.asyncio
async def test_reconnect_delay_is_cut_short_by_cancellation(config, broker, output, lines):
    broker.connect_errors = [aiomqtt.MqttError("refused")]
    supervisor = make_supervisor(config, broker, output, lines, reconnect_delay=30.0)
    task = asyncio.create_task(supervisor.run())
    await eventually(lambda: len(broker.clients) == 1)
    await asyncio.sleep(0.05)

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=1.0)
    assert len(broker.clients) == 1


@pytest.mark.asyncio
async def test_reconnect_delay_between_sessions(config, broker, output, lines):
    broker.connect_errors = [aiomqtt.MqttError("refused")]
    supervisor = make_supervisor(config, broker, output, lines, reconnect_delay=0.2)
    loop = asyncio.get_running_loop()
    started = loop.time()
    task = asyncio.create_task(supervisor.run())

    await eventually(connected(broker, 2))
    assert loop.time() - started >= 0.2

    supervisor.cancel.set()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_unexpected_errors_are_fatal(config, output, lines):
    def broken_factory(config):
        raise RuntimeError("bad client setup")

    supervisor = Supervisor(config, lines, asyncio.Event(), output=output, client_factory=broken_factory)
    with pytest.raises(RuntimeError, match="bad client setup"):
        await asyncio.wait_for(supervisor.run(), timeout=2.0)
    assert supervisor.attempts == 1
