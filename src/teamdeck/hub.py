from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ValidationError

from .errors import SessionNotFoundError
from .logging import get_logger
from .models import DispatchUpdate, HubConfig, Session, SessionSummary
from .orchestrator import TeamOrchestrator
from .protocol import (
    ClientMessage,
    DispatchUpdateMessage,
    ErrorMessage,
    HistoryMessage,
    InputMessage,
    LeaderAckMessage,
    ListSessionsMessage,
    OutputMessage,
    ProcessExitMessage,
    ProcessListMessage,
    ProcessStartedMessage,
    ResizeMessage,
    SendToLeaderMessage,
    SubscribeMessage,
    UnsubscribeMessage,
    parse_client_message,
)
from .session_manager import SessionManager

logger = get_logger(__name__)

# Pasted input can be large; asyncio's default 64 KiB line limit is too small.
READ_LIMIT = 4 * 1024 * 1024


@dataclass(slots=True, eq=False)
class ClientConnection:
    id: str
    writer: asyncio.StreamWriter
    subscriptions: set[str] = field(default_factory=set)


class ConnectionHub:
    """Multiplex terminal sessions to any number of connected clients.

    Session output and exit events go only to connections subscribed to that
    session. Process starts and dispatch updates go to every connection.
    All sends are best-effort: one broken or slow client never affects the
    others.
    """

    def __init__(self, config: HubConfig, sessions: SessionManager, teams: TeamOrchestrator):
        self.config = config
        self.sessions = sessions
        self.teams = teams
        self.terminator = config.message_terminator.encode("utf-8")
        self.clients: dict[str, ClientConnection] = {}
        self._server: asyncio.AbstractServer | None = None
        self._unsubscribers = [
            sessions.on_any_data(self._on_session_output),
            sessions.on_any_exit(self._on_session_exit),
            sessions.on_process_started(self._on_process_started),
            teams.on_dispatch_update(self._on_dispatch_update),
        ]

    @property
    def socket_path(self) -> Path:
        return Path(self.config.socket_path).expanduser()

    async def start(self) -> None:
        if self.config.transport == "unix_socket":
            socket_path = self.socket_path
            if socket_path.exists():
                socket_path.unlink()
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(socket_path), limit=READ_LIMIT
            )
            logger.info("Hub listening on %s", socket_path)
        else:
            self._server = await asyncio.start_server(
                self._handle_client, host=self.config.host, port=self.config.port, limit=READ_LIMIT
            )
            logger.info("Hub listening on %s:%s", self.config.host, self.config.port)

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        for connection in list(self.clients.values()):
            self._disconnect(connection)
            connection.writer.close()

        if self.config.transport == "unix_socket" and self.socket_path.exists():
            self.socket_path.unlink()

    def connect(self, writer: asyncio.StreamWriter) -> ClientConnection:
        connection = ClientConnection(id=uuid.uuid4().hex[:8], writer=writer)
        self.clients[connection.id] = connection
        logger.debug("Client %s connected", connection.id)
        self.send(connection, ProcessListMessage(sessions=self._summaries()))
        return connection

    def handle_raw(self, connection: ClientConnection, raw: str | bytes) -> None:
        try:
            message = parse_client_message(raw)
        except ValidationError as exc:
            first = exc.errors()[0]["msg"] if exc.errors() else str(exc)
            self.send(connection, ErrorMessage(message=f"invalid message: {first}"))
            return
        self.handle_message(connection, message)

    def handle_message(self, connection: ClientConnection, message: ClientMessage) -> None:
        if isinstance(message, SubscribeMessage):
            self._subscribe(connection, message.session_id)
        elif isinstance(message, UnsubscribeMessage):
            connection.subscriptions.discard(message.session_id)
        elif isinstance(message, InputMessage):
            self._input(connection, message.session_id, message.data)
        elif isinstance(message, ResizeMessage):
            self.sessions.resize(message.session_id, message.cols, message.rows)
        elif isinstance(message, SendToLeaderMessage):
            ack = self.teams.send_to_leader(message.team_id, message.text)
            self.send(
                connection,
                LeaderAckMessage(team_id=message.team_id, accepted=ack.accepted, message=ack.message),
            )
        elif isinstance(message, ListSessionsMessage):
            self.send(connection, ProcessListMessage(sessions=self._summaries()))

    def send(self, connection: ClientConnection, message: BaseModel) -> bool:
        return self._send_bytes(connection, self._encode(message))

    def broadcast(self, message: BaseModel) -> None:
        data = self._encode(message)
        for connection in list(self.clients.values()):
            self._send_bytes(connection, data)

    def _subscribe(self, connection: ClientConnection, session_id: str) -> None:
        if self.sessions.get(session_id) is None:
            self.send(connection, ErrorMessage(message=f'Session "{session_id}" not found'))
            return
        # Record the subscription and read history in one step so no output falls in between.
        connection.subscriptions.add(session_id)
        history = self.sessions.get_history_text(session_id)
        self.send(connection, HistoryMessage(session_id=session_id, data=history))

    def _input(self, connection: ClientConnection, session_id: str, data: str) -> None:
        if session_id not in connection.subscriptions:
            self.send(connection, ErrorMessage(message=f'Not subscribed to session "{session_id}"'))
            return
        try:
            self.sessions.write(session_id, data)
        except SessionNotFoundError as exc:
            self.send(connection, ErrorMessage(message=str(exc)))

    def _summaries(self) -> list[SessionSummary]:
        return [session.summary() for session in self.sessions.list_sessions()]

    def _encode(self, message: BaseModel) -> bytes:
        return message.model_dump_json().encode("utf-8") + self.terminator

    def _send_bytes(self, connection: ClientConnection, data: bytes) -> bool:
        transport = connection.writer.transport
        if transport.is_closing():
            return False
        queued = transport.get_write_buffer_size()
        if queued > self.config.max_send_buffer:
            logger.warning("Dropping slow client %s (%d bytes queued)", connection.id, queued)
            self._disconnect(connection)
            connection.writer.close()
            return False
        try:
            connection.writer.write(data)
        except Exception:  # noqa: BLE001
            logger.exception("Send to client %s failed", connection.id)
            return False
        return True

    def _send_to_subscribers(self, session_id: str, message: BaseModel) -> None:
        data: bytes | None = None
        for connection in list(self.clients.values()):
            if session_id not in connection.subscriptions:
                continue
            if data is None:
                data = self._encode(message)
            self._send_bytes(connection, data)

    def _disconnect(self, connection: ClientConnection) -> None:
        if self.clients.pop(connection.id, None) is not None:
            logger.debug("Client %s disconnected", connection.id)
        connection.subscriptions.clear()

    def _on_session_output(self, session_id: str, data: str) -> None:
        self._send_to_subscribers(session_id, OutputMessage(session_id=session_id, data=data))

    def _on_session_exit(self, session_id: str, exit_code: int) -> None:
        self._send_to_subscribers(session_id, ProcessExitMessage(session_id=session_id, exit_code=exit_code))

    def _on_process_started(self, session_id: str, session: Session) -> None:
        self.broadcast(
            ProcessStartedMessage(session_id=session_id, member_name=session.member_name, team_id=session.team_id)
        )

    def _on_dispatch_update(self, update: DispatchUpdate) -> None:
        self.broadcast(DispatchUpdateMessage(**update.model_dump()))

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = self.connect(writer)
        try:
            while True:
                raw = await reader.readuntil(self.terminator)
                chunk = raw[: -len(self.terminator)].decode("utf-8", errors="replace").strip()
                if not chunk:
                    continue
                self.handle_raw(connection, chunk)
        except asyncio.LimitOverrunError:
            self.send(connection, ErrorMessage(message="message too large"))
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._disconnect(connection)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
