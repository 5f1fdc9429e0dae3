"""Main entry point for the streamscribe daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .bootstrap import Runtime
from .ipc_server import IPCServer

logger = logging.getLogger(__name__)

__all__ = ["run"]


async def main() -> int:
    """Main daemon function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    runtime = Runtime()
    try:
        config = runtime.initialize()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    logger.info("Starting streamscribe daemon...")

    shutdown_event = asyncio.Event()
    controller = runtime.create_controller()
    ipc_server = IPCServer(config.daemon.computed_socket_path, controller, shutdown_event)

    try:

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()
        logger.info("Daemon started successfully")

        await shutdown_event.wait()
        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        # Stop in reverse order
        if ipc_server._server:
            await ipc_server.stop()
        await controller.stop_session()
        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
