from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Sequence

import pytest

from teamdeck.config import load_config
from teamdeck.models import AppConfig
from teamdeck.orchestrator import TeamOrchestrator
from teamdeck.pty_process import DataCallback, ExitCallback
from teamdeck.session_manager import SessionManager
from teamdeck.team_store import TeamStore


class FakeProcess:
    """Stands in for a PTY child: records input, lets tests push output and exits."""

    def __init__(
        self,
        pid: int,
        command: str,
        args: Sequence[str],
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ):
        self._pid = pid
        self.command = command
        self.args = list(args)
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self.on_data = on_data
        self.on_exit = on_exit
        self.written: list[bytes] = []
        self.signals: list[int] = []
        self.exited = False

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def member_name(self) -> str:
        return self.env.get("TEAMDECK_AGENT_NAME", "")

    @property
    def written_text(self) -> str:
        return b"".join(self.written).decode("utf-8")

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = cols
        self.rows = rows

    def kill(self, sig: int) -> None:
        self.signals.append(sig)
        # Like a real process, the exit is reported on a later loop iteration.
        asyncio.get_running_loop().call_soon(self.exit, -sig)

    def emit(self, data: str | bytes) -> None:
        self.on_data(data.encode("utf-8") if isinstance(data, str) else data)

    def exit(self, code: int = 0) -> None:
        if self.exited:
            return
        self.exited = True
        self.on_exit(code)


class FakeProcessFactory:
    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.fail_at: int | None = None

    async def __call__(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> FakeProcess:
        if self.fail_at is not None and len(self.processes) >= self.fail_at:
            raise OSError("spawn failed")
        process = FakeProcess(1000 + len(self.processes), command, args, cwd, env, cols, rows, on_data, on_exit)
        self.processes.append(process)
        return process

    def for_member(self, name: str) -> FakeProcess:
        matches = [process for process in self.processes if process.member_name == name]
        assert matches, f"no process spawned for {name}"
        return matches[-1]


@pytest.fixture()
def next_iterations() -> Callable[..., Awaitable[None]]:
    """Let callbacks scheduled with ``call_soon``, such as fake process exits, run."""

    async def _run(count: int = 3) -> None:
        for _ in range(count):
            await asyncio.sleep(0)

    return _run


@pytest.fixture()
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    return load_config(
        cli_overrides={
            "teams.teams_dir": str(tmp_path / "teams"),
            "teams.scratch_dir": str(tmp_path / "scratch"),
            "teams.settle_delay": 0,
            "hub.socket_path": f"/tmp/teamdeck-test-{uuid.uuid4().hex[:8]}.sock",
        }
    )


@pytest.fixture()
def sessions(app_config: AppConfig, process_factory: FakeProcessFactory) -> SessionManager:
    return SessionManager(app_config.session, process_factory=process_factory)


@pytest.fixture()
def store(tmp_path: Path) -> TeamStore:
    return TeamStore(tmp_path / "teams")


@pytest.fixture()
def orchestrator(app_config: AppConfig, sessions: SessionManager, store: TeamStore) -> TeamOrchestrator:
    return TeamOrchestrator(app_config, sessions, store)


@pytest.fixture()
def drain_background(orchestrator: TeamOrchestrator) -> Callable[[], Awaitable[None]]:
    """Wait until the orchestrator's startup and dispatch injections have finished."""

    async def _drain() -> None:
        while orchestrator.background_tasks:
            await asyncio.gather(*list(orchestrator.background_tasks), return_exceptions=True)

    return _drain
