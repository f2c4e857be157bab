from __future__ import annotations

import codecs
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from .errors import SessionExistsError, SessionNotFoundError
from .events import EventEmitter, Unsubscribe
from .logging import get_logger
from .models import Session, SessionConfig, SessionStatus
from .pty_process import DataCallback, ExitCallback, ProcessHandle, PtyProcess, resolve_signal
from .ring_buffer import OutputRingBuffer

logger = get_logger(__name__)

ProcessFactory = Callable[..., Awaitable[ProcessHandle]]

_PER_SESSION_MAX_LISTENERS = 50


def _noop() -> None:
    return None


@dataclass(slots=True)
class _SessionEntry:
    session_id: str
    history: OutputRingBuffer
    events: EventEmitter
    decoder: codecs.IncrementalDecoder = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")("replace"))
    session: Session | None = None
    process: ProcessHandle | None = None


class SessionManager:
    """Registry of PTY-backed sessions and their output history.

    Every output chunk is appended to the session's ring buffer and then
    delivered to per-session listeners followed by global listeners, in the
    order the process produced it.
    """

    def __init__(self, config: SessionConfig, process_factory: ProcessFactory | None = None):
        self.config = config
        self._process_factory: ProcessFactory = process_factory or PtyProcess.start
        self._kill_signal = resolve_signal(config.kill_signal)
        self._sessions: dict[str, _SessionEntry] = {}
        self._events = EventEmitter(max_listeners=config.max_listeners)

    async def spawn(
        self,
        session_id: str,
        team_id: str,
        member_name: str,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str,
        env: dict[str, str] | None = None,
        cols: int | None = None,
        rows: int | None = None,
    ) -> Session:
        if session_id in self._sessions:
            raise SessionExistsError(session_id)

        cols = cols or self.config.cols
        rows = rows or self.config.rows
        merged_env = {
            **os.environ,
            **(env or {}),
            "TERM": self.config.term,
            "COLORTERM": "truecolor",
        }

        entry = _SessionEntry(
            session_id=session_id,
            history=OutputRingBuffer(self.config.history_bytes),
            events=EventEmitter(max_listeners=_PER_SESSION_MAX_LISTENERS),
        )
        # Reserve the id while the process starts so a concurrent spawn cannot reuse it.
        self._sessions[session_id] = entry

        on_data: DataCallback = lambda data: self._handle_output(entry, data)  # noqa: E731
        on_exit: ExitCallback = lambda code: self._handle_exit(entry, code)  # noqa: E731
        try:
            process = await self._process_factory(
                command,
                list(args),
                cwd=cwd,
                env=merged_env,
                cols=cols,
                rows=rows,
                on_data=on_data,
                on_exit=on_exit,
            )
        except BaseException:
            if self._sessions.get(session_id) is entry:
                del self._sessions[session_id]
            raise

        session = Session(
            id=session_id,
            team_id=team_id,
            member_name=member_name,
            pid=process.pid,
            cwd=cwd,
            command=command,
            cols=cols,
            rows=rows,
        )
        entry.session = session
        entry.process = process

        self._events.emit("process_started", session_id, session)
        logger.info('Spawned session "%s" (id=%s, pid=%s)', member_name, session_id, process.pid)
        return session

    def write(self, session_id: str, data: str) -> None:
        entry = self._sessions.get(session_id)
        if entry is None or entry.session is None:
            raise SessionNotFoundError(session_id)
        if not entry.session.is_running or entry.process is None:
            return
        entry.process.write(data.encode("utf-8"))

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        entry = self._sessions.get(session_id)
        if entry is None or entry.session is None or entry.process is None:
            return
        if not entry.session.is_running:
            return
        try:
            entry.process.resize(cols, rows)
        except OSError as exc:
            logger.debug("Resize of session %s failed: %s", session_id, exc)
            return
        entry.session.cols = cols
        entry.session.rows = rows

    def kill(self, session_id: str) -> None:
        entry = self._sessions.get(session_id)
        if entry is None or entry.session is None or entry.process is None:
            return
        if not entry.session.is_running:
            return
        try:
            entry.process.kill(self._kill_signal)
        except OSError as exc:
            logger.debug("Kill of session %s failed: %s", session_id, exc)
            return
        logger.info('Killed session "%s" (id=%s)', entry.session.member_name, session_id)

    def kill_all(self) -> None:
        for session_id in list(self._sessions):
            self.kill(session_id)

    def remove(self, session_id: str) -> None:
        entry = self._sessions.pop(session_id, None)
        if entry is not None:
            entry.events.clear()

    def get(self, session_id: str) -> Session | None:
        entry = self._sessions.get(session_id)
        return entry.session if entry else None

    def list_sessions(self) -> list[Session]:
        return [entry.session for entry in self._sessions.values() if entry.session is not None]

    def list_team_sessions(self, team_id: str) -> list[Session]:
        return [session for session in self.list_sessions() if session.team_id == team_id]

    def get_history(self, session_id: str) -> bytes:
        entry = self._sessions.get(session_id)
        return entry.history.getvalue() if entry else b""

    def get_history_text(self, session_id: str) -> str:
        entry = self._sessions.get(session_id)
        return entry.history.text() if entry else ""

    def on_data(self, session_id: str, callback: Callable[[str], None]) -> Unsubscribe:
        entry = self._sessions.get(session_id)
        if entry is None:
            return _noop
        return entry.events.on("data", callback)

    def on_exit(self, session_id: str, callback: Callable[[int], None]) -> Unsubscribe:
        entry = self._sessions.get(session_id)
        if entry is None:
            return _noop
        return entry.events.on("exit", callback)

    def on_any_data(self, callback: Callable[[str, str], None]) -> Unsubscribe:
        return self._events.on("data", callback)

    def on_any_exit(self, callback: Callable[[str, int], None]) -> Unsubscribe:
        return self._events.on("exit", callback)

    def on_process_started(self, callback: Callable[[str, Session], None]) -> Unsubscribe:
        return self._events.on("process_started", callback)

    def _is_registered(self, entry: _SessionEntry) -> bool:
        return self._sessions.get(entry.session_id) is entry

    def _deliver(self, entry: _SessionEntry, text: str) -> None:
        if not text:
            return
        entry.history.append(text.encode("utf-8"))
        entry.events.emit("data", text)
        self._events.emit("data", entry.session_id, text)

    def _handle_output(self, entry: _SessionEntry, data: bytes) -> None:
        if not self._is_registered(entry):
            return
        self._deliver(entry, entry.decoder.decode(data))

    def _handle_exit(self, entry: _SessionEntry, exit_code: int) -> None:
        session = entry.session
        if session is None or not self._is_registered(entry):
            return
        if session.status == SessionStatus.EXITED:
            return
        self._deliver(entry, entry.decoder.decode(b"", final=True))
        session.status = SessionStatus.EXITED
        session.exit_code = exit_code
        logger.info('Session "%s" (id=%s) exited with code %s', session.member_name, session.id, exit_code)
        entry.events.emit("exit", exit_code)
        self._events.emit("exit", entry.session_id, exit_code)
