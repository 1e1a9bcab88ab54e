"""
Main entry point for mqtt-stream.

This module is responsible for:
- Parsing configuration (flags, environment, YAML file).
- Setting up logging on stderr (stdout carries message data).
- Turning SIGINT/SIGTERM into the process-wide cancellation event.
- Starting the stdin LineSource and running the Supervisor.
- Mapping the outcome to a process exit code.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from mqtt_stream.config_loader import load_stream_config
from mqtt_stream.errors import ConfigError
from mqtt_stream.line_source import LineSource
from mqtt_stream.models import StreamConfig
from mqtt_stream.supervisor import Supervisor

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

SIGNALS = (signal.SIGINT, signal.SIGTERM)


def setup_logging(verbose: bool = False):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s',
        stream=sys.stderr,
    )

logger = logging.getLogger(__name__)


def shutdown(signal_name: str, cancel: asyncio.Event):
    """Signal handler: asks every running task to unwind."""
    logger.info(f"Received exit signal {signal_name}...")
    cancel.set()


async def main_application_runner(config: StreamConfig) -> int:
    loop = asyncio.get_running_loop()
    cancel = asyncio.Event()

    # Setup Signal Handlers for OS interrupts
    installed = []
    for sig in SIGNALS:
        try:
            loop.add_signal_handler(sig, shutdown, sig.name, cancel)
            installed.append(sig)
        except NotImplementedError:
            # no loop signal support on this platform; Ctrl+C raises KeyboardInterrupt instead
            logger.debug(f"Cannot install handler for {sig.name}")

    lines = LineSource(async_loop=loop)
    lines.start()
    supervisor = Supervisor(config, lines, cancel)
    try:
        await supervisor.run()
    finally:
        lines.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_stream_config(argv)
    except ConfigError as e:
        setup_logging()
        logger.error(f"invalid configuration: {e}")
        return EXIT_CONFIG

    setup_logging(config.verbose)
    logger.debug(f"Starting with {config!r}")

    try:
        return asyncio.run(main_application_runner(config))
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception:
        logger.exception("fatal error")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
