"""IPC server implementation using Unix domain sockets."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Set

from pydantic import ValidationError

from .controller import PipelineController
from .errors import PipelineError
from .ipc_models import (
    AckResponse,
    ClearCommand,
    CommandWrapper,
    ErrorResponse,
    ResponseWrapper,
    SessionModel,
    ShutdownCommand,
    StartCommand,
    StateNotification,
    StatusCommand,
    StatusResponse,
    StopCommand,
    SubscribeCommand,
    ToggleCommand,
)
from .state import ACTIVE_STATUSES, SessionSnapshot

logger = logging.getLogger(__name__)

# Size limit for incoming messages (64KB should be plenty for commands)
MAX_MESSAGE_SIZE = 64 * 1024
MESSAGE_TERMINATOR = b"\n"

# Idle timeout for clients that have not subscribed
CLIENT_READ_TIMEOUT_S = 5.0


class IPCServer:
    """Exposes the pipeline controller over a Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        controller: PipelineController,
        shutdown_event: asyncio.Event,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            controller: The pipeline controller commands are routed to
            shutdown_event: Event to signal daemon shutdown
        """
        self.socket_path = socket_path
        self.controller = controller
        self.shutdown_event = shutdown_event

        self._server: Optional[asyncio.AbstractServer] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()
        self._broadcast_tasks: Set[asyncio.Task] = set()

        self.controller.state_manager.add_observer(self._on_session_change)

    def _session_model(self) -> SessionModel:
        return SessionModel.from_snapshot(self.controller.snapshot())

    def _on_session_change(self, snapshot: SessionSnapshot) -> None:
        """Broadcast session changes to subscribers."""
        if not self._subscribers:
            return

        notification = ResponseWrapper(
            root=StateNotification(session=SessionModel.from_snapshot(snapshot))
        )
        task = asyncio.create_task(self._broadcast_notification(notification))
        self._broadcast_tasks.add(task)
        task.add_done_callback(self._broadcast_tasks.discard)

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        data = notification.to_line()

        for writer in list(self._subscribers):
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue

            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def _send_response(
        self, writer: asyncio.StreamWriter, response: ResponseWrapper
    ) -> None:
        """Send a response to a client."""
        try:
            writer.write(response.to_line())
            await writer.drain()
            logger.debug(f"Sent response: {response.model_dump_json()}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    async def _send_ack(self, writer: asyncio.StreamWriter) -> None:
        await self._send_response(
            writer, ResponseWrapper(root=AckResponse(session=self._session_model()))
        )

    async def _send_error(self, writer: asyncio.StreamWriter, message: str) -> None:
        await self._send_response(
            writer, ResponseWrapper(root=ErrorResponse(message=message))
        )

    async def _handle_start_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Start command")
        try:
            await self.controller.start_session()
        except PipelineError as e:
            await self._send_error(writer, f"Failed to start session: {e}")
            return
        await self._send_ack(writer)

    async def _handle_stop_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Stop command")
        await self.controller.stop_session()
        await self._send_ack(writer)

    async def _handle_toggle_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Toggle command")
        if self.controller.status in ACTIVE_STATUSES:
            await self._handle_stop_command(writer)
        else:
            await self._handle_start_command(writer)

    async def _handle_clear_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Clear command")
        try:
            self.controller.clear()
        except PipelineError as e:
            await self._send_error(writer, str(e))
            return
        await self._send_ack(writer)

    async def _handle_status_command(self, writer: asyncio.StreamWriter) -> None:
        logger.debug("Handling Status command")
        response = ResponseWrapper(root=StatusResponse(session=self._session_model()))
        await self._send_response(writer, response)

    async def _handle_subscribe_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Subscribe command")
        self._subscribers.add(writer)

        # Send initial snapshot immediately
        notification = ResponseWrapper(
            root=StateNotification(session=self._session_model())
        )
        await self._send_response(writer, notification)

    async def _handle_shutdown_command(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling Shutdown command")
        await self.controller.stop_session()
        await self._send_ack(writer)
        self.shutdown_event.set()

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message).root
        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_error(writer, f"Invalid command format: {e}")
            return True

        logger.debug(f"Parsed command: {command.command}")
        try:
            if isinstance(command, StartCommand):
                await self._handle_start_command(writer)
            elif isinstance(command, StopCommand):
                await self._handle_stop_command(writer)
            elif isinstance(command, ToggleCommand):
                await self._handle_toggle_command(writer)
            elif isinstance(command, ClearCommand):
                await self._handle_clear_command(writer)
            elif isinstance(command, StatusCommand):
                await self._handle_status_command(writer)
            elif isinstance(command, SubscribeCommand):
                await self._handle_subscribe_command(writer)
            elif isinstance(command, ShutdownCommand):
                await self._handle_shutdown_command(writer)
                return False
        except Exception as e:
            logger.exception("Error handling command")
            await self._send_error(writer, f"Internal error: {e}")
        return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a client connection."""
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    timeout = None if writer in self._subscribers else CLIENT_READ_TIMEOUT_S
                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )
                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    logger.debug(f"Received from {peer}: {message}")

                    if not await self._handle_command(writer, message):
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected: {peer}")
                    break
                except asyncio.LimitOverrunError:
                    logger.warning(f"Message too large from client {peer}")
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break

        finally:
            logger.info(f"Closing connection with {peer}")
            self._subscribers.discard(writer)
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, ConnectionError) as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                self.socket_path.unlink()
            else:
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )
        except OSError as e:
            logger.error(f"Failed to start IPC server: {e}")
            self.socket_path.unlink(missing_ok=True)
            raise

        logger.info(f"IPC server listening on {self.socket_path}")

    async def stop(self) -> None:
        """Stop the IPC server and any active session."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")

        # Close subscriber connections first to unblock their read loops
        for writer in list(self._subscribers):
            if not writer.is_closing():
                writer.close()
        self._subscribers.clear()

        await self.controller.stop_session()

        self._server.close()

        # wait_closed() blocks until every client connection is gone
        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in list(self._client_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        await self._server.wait_closed()
        self._server = None

        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
