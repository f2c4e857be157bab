from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"


class DispatchStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TeamStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class SessionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shell: str = "/bin/bash"
    shell_args: list[str] = Field(default_factory=lambda: ["--login", "-i"])
    cols: int = 220
    rows: int = 50
    history_bytes: int = 50 * 1024
    kill_signal: str = "SIGHUP"
    max_listeners: int = 100
    term: str = "xterm-256color"

    @field_validator("history_bytes")
    @classmethod
    def validate_history_bytes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("history_bytes must be positive")
        return value


class HubConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transport: Literal["unix_socket", "tcp"] = "unix_socket"
    socket_path: str = "/tmp/teamdeck.sock"
    host: str = "127.0.0.1"
    port: int = 13333
    message_terminator: str = "\n"
    max_send_buffer: int = 1024 * 1024


class TeamsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    teams_dir: str = "~/.teamdeck/teams"
    scratch_dir: str = Field(default_factory=tempfile.gettempdir)
    settle_delay: float = 1.5
    leader_buffer_chars: int = 20_000
    member_buffer_chars: int = 30_000
    env: dict[str, str] = Field(default_factory=dict)


class AgentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = "claude"
    args: list[str] = Field(default_factory=lambda: ["--dangerously-skip-permissions"])
    print_flag: str = "-p"
    default_model: str = "claude-opus-4-5"
    default_role: str = "subagent"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session: SessionConfig = Field(default_factory=SessionConfig)
    hub: HubConfig = Field(default_factory=HubConfig)
    teams: TeamsConfig = Field(default_factory=TeamsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)


class Session(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    team_id: str
    member_name: str
    pid: int
    status: SessionStatus = SessionStatus.RUNNING
    exit_code: int | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cwd: str
    command: str
    cols: int
    rows: int

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def summary(self) -> "SessionSummary":
        return SessionSummary(
            id=self.id,
            team_id=self.team_id,
            member_name=self.member_name,
            pid=self.pid,
            status=self.status,
            exit_code=self.exit_code,
            started_at=self.started_at.isoformat(),
            cwd=self.cwd,
        )


class SessionSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    team_id: str
    member_name: str
    pid: int
    status: SessionStatus
    exit_code: int | None = None
    started_at: str
    cwd: str


class MemberConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    role: str = "subagent"
    model: str = ""
    color: str | None = None
    cwd: str | None = None
    task: str | None = None


class TeamConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str | None = None
    created_at: int = 0
    leader_id: str = ""
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    members: list[MemberConfig] = Field(default_factory=list)

    def leader(self) -> MemberConfig | None:
        """Member id matching ``leader_id``, else the first orchestrator, else the first member."""
        if self.leader_id:
            for member in self.members:
                if member.id == self.leader_id:
                    return member
        for member in self.members:
            if member.role == "orchestrator":
                return member
        return self.members[0] if self.members else None


class MemberRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    role: str | None = None
    model: str | None = None
    color: str | None = None
    cwd: str | None = None
    task: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("member name must not be empty")
        return value.strip()


class TeamCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str | None = None
    cwd: str
    env: dict[str, str] = Field(default_factory=dict)
    members: list[MemberRequest]
    launch_immediately: bool = False

    @field_validator("members")
    @classmethod
    def validate_members(cls, value: list[MemberRequest]) -> list[MemberRequest]:
        if not value:
            raise ValueError("a team needs at least one member")
        return value


class TeamSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    config: TeamConfig
    status: TeamStatus
    is_running: bool
    session_ids: list[str] = Field(default_factory=list)


class LaunchedTeam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    team_id: str
    session_ids: list[str]


class LeaderAck(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accepted: bool
    message: str


class DispatchUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    team_id: str
    task_id: str
    member_name: str
    status: DispatchStatus
    detail: str | None = None


class DispatchTask(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str
    team_id: str
    member_name: str
    status: DispatchStatus = DispatchStatus.QUEUED
    detail: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class TeamRuntimeState:
    team_id: str
    config: TeamConfig
    leader_name: str
    leader_session_id: str
    session_ids: list[str] = field(default_factory=list)
    members: dict[str, str] = field(default_factory=dict)
    primed: bool = False
