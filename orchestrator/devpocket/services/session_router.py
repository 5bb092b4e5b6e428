"""
Session Router

Accepts terminal and log WebSockets for environments:

    /terminal/<environment id>?token=<access token>
    /logs/<environment id>?token=<access token>

Everything is checked before the handshake completes: path shape, token
(access class only), user active and not locked, environment owned by the
user, per-user connection quota. Any failure closes with 1008 and leaves no
trace in the connection registry or the terminal session table.
"""

import logging
import re
from dataclasses import dataclass
from typing import Annotated, Literal, Optional, Union

from fastapi import WebSocket
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..auth import authenticate
from ..utils.sanitize import sanitize_message
from .connection_manager import ConnectionSession
from .orchestration.context import OrchestratorContext
from .orchestration.errors import AuthRejected, OrchestratorError
from .orchestration.state import SessionStatus

logger = logging.getLogger(__name__)

CLOSE_POLICY_VIOLATION = 1008

TERMINAL_CHANNEL = "terminal"
LOGS_CHANNEL = "logs"

PATH_PATTERN = re.compile(rf"^/?({TERMINAL_CHANNEL}|{LOGS_CHANNEL})/([^/?#]+)/?$")

PROCESSING_ERROR = {"type": "error", "message": "Failed to process message"}


# =============================================================================
# Client frames
# =============================================================================

class PingFrame(BaseModel):
    type: Literal["ping"]


class PongFrame(BaseModel):
    type: Literal["pong"]


class InputFrame(BaseModel):
    type: Literal["input"]
    data: str


class ResizeFrame(BaseModel):
    type: Literal["resize"]
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


ClientFrame = Annotated[
    Union[PingFrame, PongFrame, InputFrame, ResizeFrame],
    Field(discriminator="type"),
]

_client_frame = TypeAdapter(ClientFrame)


def parse_frame(raw: str):
    """
    Parse one inbound text frame.

    Raises:
        ValidationError: Not JSON, no known ``type``, or missing fields
    """
    return _client_frame.validate_json(raw)


@dataclass
class SessionTarget:
    channel: str
    environment_id: str


def parse_session_path(path: str) -> Optional[SessionTarget]:
    match = PATH_PATTERN.match(path or "")
    if match is None:
        return None
    return SessionTarget(channel=match.group(1), environment_id=match.group(2))


# =============================================================================
# Router
# =============================================================================

class SessionRouter:
    """Validates, registers and serves one WebSocket per call to handle()."""

    def __init__(self, context: OrchestratorContext):
        self.context = context
        self.connections = context.connections
        self.store = context.store

    async def handle(self, websocket: WebSocket, path: str, token: Optional[str]) -> None:
        try:
            target, user, environment = await self._authorize(path, token)
            session = await self.connections.register(
                user_id=user.id,
                environment_id=environment.id,
                channel=target.channel,
                websocket=websocket,
            )
        except AuthRejected as e:
            logger.warning(f"[WS] Rejected connection to {sanitize_message(path)}: {sanitize_message(e.message)}")
            await self._reject(websocket)
            return
        except Exception as e:
            logger.error(f"[WS] Connection setup failed for {sanitize_message(path)}: {sanitize_message(e)}", exc_info=True)
            await self._reject(websocket)
            return

        try:
            await websocket.accept()
            await self._on_open(session, environment)
            await self._receive_loop(session)
        except Exception as e:
            logger.error(f"[WS] Connection {session.connection_id} failed: {sanitize_message(e)}", exc_info=True)
        finally:
            await self._on_close(session)

    async def _authorize(self, path: str, token: Optional[str]):
        target = parse_session_path(path)
        if target is None:
            raise AuthRejected("Invalid connection path")

        user = await authenticate(self.store, token)

        environment = await self.store.get_owned_environment(target.environment_id, user.id)
        if environment is None:
            raise AuthRejected("Environment not found or access denied")

        if not self.connections.can_accept(user.id):
            raise AuthRejected("Connection limit reached")

        return target, user, environment

    async def _reject(self, websocket: WebSocket) -> None:
        try:
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Authentication failed")
        except Exception as e:
            logger.debug(f"[WS] Close after rejection failed: {e}")

    async def _send(self, session: ConnectionSession, message: dict) -> bool:
        try:
            await session.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[WS] Send to {session.connection_id} failed: {e}")
            return False

    # =========================================================================
    # OPEN / CLOSE
    # =========================================================================

    async def _on_open(self, session: ConnectionSession, environment) -> None:
        is_terminal = session.channel == TERMINAL_CHANNEL

        await self._send(session, {
            "type": "welcome",
            "message": f"Connected to {environment.name}",
            "environment": {
                "id": environment.id,
                "name": environment.name,
                "status": environment.status,
                "installationCompleted": bool(environment.installation_completed),
                "ptyEnabled": is_terminal,
            },
        })

        if is_terminal:
            try:
                await self.store.upsert_terminal_session(environment.id, session.connection_id)
            except Exception as e:
                logger.error(f"Failed to create/update terminal session {session.connection_id}: {e}", exc_info=True)
        else:
            await self._send_log_tail(session)

        logger.info(
            f"[WS] Connection established: user {session.user_id}, environment {session.environment_id}, "
            f"channel {session.channel}, id {session.connection_id}"
        )

    async def _send_log_tail(self, session: ConnectionSession) -> None:
        try:
            logs = await self.context.lifecycle.get_logs(session.environment_id)
        except OrchestratorError as e:
            await self._send(session, {"type": "error", "data": sanitize_message(e.message)})
            return
        except Exception as e:
            logger.error(f"Failed to load logs for {session.environment_id}: {sanitize_message(e)}", exc_info=True)
            await self._send(session, {"type": "error", "data": "Failed to retrieve logs"})
            return
        await self._send(session, {"type": "output", "data": logs})

    async def _on_close(self, session: ConnectionSession) -> None:
        await self.connections.unregister(session.connection_id)
        if session.channel == TERMINAL_CHANNEL:
            try:
                await self.store.mark_terminal_session(
                    session.environment_id, session.connection_id, SessionStatus.INACTIVE
                )
            except Exception as e:
                logger.error(f"Failed to update terminal session {session.connection_id}: {e}", exc_info=True)
        logger.info(f"[WS] Connection closed: {session.connection_id}")

    # =========================================================================
    # FRAMES
    # =========================================================================

    async def _receive_loop(self, session: ConnectionSession) -> None:
        websocket = session.websocket
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            await self.dispatch(session, raw)

    async def dispatch(self, session: ConnectionSession, raw: str) -> None:
        """Handle one inbound frame; failures answer with an error frame and keep the socket open."""
        try:
            frame = parse_frame(raw)
        except ValidationError as e:
            logger.warning(
                f"[WS] Unprocessable frame on {session.connection_id}: {e.error_count()} validation error(s)"
            )
            await self._send(session, PROCESSING_ERROR)
            return

        try:
            if isinstance(frame, PingFrame):
                self.connections.touch(session.connection_id)
                await self._send(session, {"type": "pong"})
            elif isinstance(frame, PongFrame):
                self.connections.touch(session.connection_id)
            elif isinstance(frame, InputFrame):
                await self._handle_input(session, frame)
            elif isinstance(frame, ResizeFrame):
                self._handle_resize(session, frame)
        except Exception as e:
            logger.error(f"[WS] Error handling {frame.type} frame on {session.connection_id}: {sanitize_message(e)}", exc_info=True)
            await self._send(session, PROCESSING_ERROR)

    async def _handle_input(self, session: ConnectionSession, frame: InputFrame) -> None:
        if session.channel != TERMINAL_CHANNEL:
            logger.debug(f"[WS] Ignoring input on {session.channel} connection {session.connection_id}")
            return

        try:
            # Each frame is a one-shot command; nothing is written to stdin, so leave it detached
            result = await self.context.executor.execute_command(
                session.environment_id, frame.data, attach_stdin=False
            )
        except Exception as e:
            logger.error(f"[WS] Terminal input failed for {session.environment_id}: {sanitize_message(e)}", exc_info=True)
            await self._send(session, {"type": "error", "data": "Failed to execute command"})
            return

        if result.success and result.output:
            await self._send(session, {"type": "output", "data": result.output})
        elif result.error:
            await self._send(session, {"type": "error", "data": sanitize_message(result.error)})

        try:
            await self.store.record_environment_activity(session.environment_id)
        except Exception as e:
            logger.warning(f"Failed to record activity for {session.environment_id}: {e}")

    def _handle_resize(self, session: ConnectionSession, frame: ResizeFrame) -> None:
        # TODO: apply to the tmux session once the executor keeps a pty open
        if session.channel != TERMINAL_CHANNEL:
            return
        logger.debug(
            f"[WS] Terminal resize requested on {session.connection_id}: {frame.cols}x{frame.rows}"
        )
