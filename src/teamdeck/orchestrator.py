from __future__ import annotations

import asyncio
import os
import re
import shlex
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterable

from .config import scratch_dir, teams_dir
from .errors import SessionNotFoundError, TeamAlreadyRunningError, TeamConfigError
from .events import EventEmitter, Unsubscribe
from .logging import get_logger
from .markers import (
    append_trailing,
    done_sentinel_echo,
    result_instruction,
    scan_dispatch_markers,
    scan_done_markers,
    scan_result_markers,
)
from .models import (
    AppConfig,
    DispatchStatus,
    DispatchTask,
    DispatchUpdate,
    LaunchedTeam,
    LeaderAck,
    MemberConfig,
    TeamConfig,
    TeamCreateRequest,
    TeamRuntimeState,
    TeamStatus,
    TeamSummary,
)
from .session_manager import SessionManager
from .team_store import TeamStore

logger = get_logger(__name__)

DISPATCH_FORMAT_HINT = (
    'Use format: DOUBLE-BRACKET DISPATCH member="<member-name>" task="<task>" DOUBLE-BRACKET '
    "(replace DOUBLE-BRACKET with [[ and ]] respectively)"
)


def normalize_member_key(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


def resolve_member_name(member_names: Iterable[str], requested: str) -> str | None:
    """Map a requested name onto a configured member name.

    Tries an exact match, then a case-insensitive match, then a match on the
    lowercased alphanumeric key. The fuzzy steps only resolve when exactly one
    member matches; ambiguous names resolve to ``None``.
    """
    names = list(member_names)
    if not names or not requested:
        return None
    if requested in names:
        return requested

    lowered = requested.lower()
    case_matches = [name for name in names if name.lower() == lowered]
    if len(case_matches) == 1:
        return case_matches[0]
    if len(case_matches) > 1:
        return None

    target_key = normalize_member_key(requested)
    if not target_key:
        return None
    normalized_matches = [name for name in names if normalize_member_key(name) == target_key]
    if len(normalized_matches) == 1:
        return normalized_matches[0]
    return None


class TeamOrchestrator:
    def __init__(self, config: AppConfig, sessions: SessionManager, store: TeamStore | None = None):
        self.config = config
        self.sessions = sessions
        self.store = store or TeamStore(teams_dir(config))
        self.scratch_dir = scratch_dir(config)

        # team_id -> session ids of the latest launch; kept across stop_team
        self.team_sessions: dict[str, list[str]] = {}
        self.runtime: dict[str, TeamRuntimeState] = {}
        self.session_teams: dict[str, str] = {}
        self.leader_buffers: dict[str, str] = {}
        self.member_buffers: dict[str, str] = {}
        # session_id -> task id the member is currently executing
        self.active_tasks: dict[str, str] = {}
        self.first_output_seen: set[str] = set()
        self.dispatches: dict[str, DispatchTask] = {}
        self.background_tasks: set[asyncio.Task[Any]] = set()
        self.launching: set[str] = set()

        self._events = EventEmitter(max_listeners=200)
        self._unsubscribe_output = self.sessions.on_any_data(self._handle_session_output)

    async def close(self) -> None:
        self._unsubscribe_output()
        tasks = list(self.background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def on_dispatch_update(self, callback: Callable[[DispatchUpdate], None]) -> Unsubscribe:
        return self._events.on("dispatch_update", callback)

    async def create_team(self, request: TeamCreateRequest) -> str:
        team_id = str(uuid.uuid4())
        members = [
            MemberConfig(
                id=str(uuid.uuid4()),
                name=member.name,
                role=member.role or self.config.agent.default_role,
                model=member.model or self.config.agent.default_model,
                color=member.color,
                cwd=member.cwd or request.cwd,
                task=member.task,
            )
            for member in request.members
        ]
        config = TeamConfig(
            name=request.name,
            description=request.description,
            created_at=int(time.time() * 1000),
            cwd=request.cwd,
            env=dict(request.env),
            members=members,
        )
        leader = config.leader()
        config.leader_id = leader.id if leader else ""

        await self.store.save(team_id, config)
        logger.info('Created team "%s" (id=%s)', request.name, team_id)
        return team_id

    async def launch_team(self, team_id: str, env: dict[str, str] | None = None) -> LaunchedTeam:
        # Checked and marked before the first await so overlapping launches cannot both spawn.
        if team_id in self.launching or self.is_team_running(team_id):
            raise TeamAlreadyRunningError(team_id)
        self.launching.add(team_id)
        try:
            return await self._launch(team_id, env)
        finally:
            self.launching.discard(team_id)

    async def _launch(self, team_id: str, env: dict[str, str] | None) -> LaunchedTeam:
        config = await self.store.load(team_id)
        leader = config.leader()
        if leader is None:
            raise TeamConfigError(f'Team "{team_id}" has no members')

        team_env = {
            "TEAMDECK_TEAM_ID": team_id,
            **self.config.teams.env,
            **config.env,
            **(env or {}),
        }
        state = TeamRuntimeState(
            team_id=team_id,
            config=config,
            leader_name=leader.name,
            leader_session_id="",
        )
        startup_lines: list[tuple[str, str]] = []

        try:
            for member in config.members:
                session_id = str(uuid.uuid4())
                is_leader = member.id == leader.id
                member_cwd = await self._resolve_cwd(member.cwd or config.cwd)
                member_env = {
                    **team_env,
                    "TEAMDECK_AGENT_NAME": member.name,
                    "TEAMDECK_AGENT_ROLE": member.role,
                }
                startup_line = await self._startup_command(member, session_id, is_leader)

                await self.sessions.spawn(
                    session_id,
                    team_id,
                    member.name,
                    self.config.session.shell,
                    self.config.session.shell_args,
                    cwd=member_cwd,
                    env=member_env,
                    cols=self.config.session.cols,
                    rows=self.config.session.rows,
                )
                logger.info("Spawned shell for %s in %s", member.name, member_cwd)

                state.session_ids.append(session_id)
                state.members[member.name] = session_id
                if is_leader:
                    state.leader_session_id = session_id
                startup_lines.append((session_id, startup_line))
        except BaseException:
            for session_id in state.session_ids:
                self.sessions.kill(session_id)
            logger.error('Launch of team "%s" failed; killed %d spawned sessions', team_id, len(state.session_ids))
            raise

        self._discard_routing(team_id)
        self.runtime[team_id] = state
        self.team_sessions[team_id] = list(state.session_ids)
        for session_id in state.session_ids:
            self.session_teams[session_id] = team_id

        for session_id, line in startup_lines:
            self._spawn_background(self._inject_startup(session_id, line))

        logger.info('Launched team "%s" with %d sessions', team_id, len(state.session_ids))
        return LaunchedTeam(team_id=team_id, session_ids=list(state.session_ids))

    def stop_team(self, team_id: str) -> None:
        for session_id in self.team_sessions.get(team_id, []):
            self.sessions.kill(session_id)
        self._discard_routing(team_id)
        logger.info('Stopped team "%s"', team_id)

    async def destroy_team(self, team_id: str) -> bool:
        self.stop_team(team_id)
        self.team_sessions.pop(team_id, None)
        for task_id in [tid for tid, task in self.dispatches.items() if task.team_id == team_id]:
            del self.dispatches[task_id]
        deleted = await self.store.delete(team_id)
        logger.info('Destroyed team "%s"', team_id)
        return deleted

    async def list_teams(self) -> list[TeamSummary]:
        configs = await self.store.list()
        return [
            TeamSummary(
                id=team_id,
                config=config,
                status=self._status_for(team_id, stored=True),
                is_running=self.is_team_running(team_id),
                session_ids=self.get_team_session_ids(team_id),
            )
            for team_id, config in configs.items()
        ]

    async def team_status(self, team_id: str) -> TeamStatus:
        stored = await asyncio.to_thread(self.store.exists, team_id)
        return self._status_for(team_id, stored=stored)

    def _status_for(self, team_id: str, stored: bool) -> TeamStatus:
        if self.is_team_running(team_id):
            return TeamStatus.RUNNING
        if team_id in self.team_sessions:
            return TeamStatus.STOPPED
        if stored:
            return TeamStatus.CREATED
        return TeamStatus.UNINITIALIZED

    def get_team_session_ids(self, team_id: str) -> list[str]:
        return list(self.team_sessions.get(team_id, []))

    def is_team_running(self, team_id: str) -> bool:
        for session_id in self.team_sessions.get(team_id, []):
            session = self.sessions.get(session_id)
            if session is not None and session.is_running:
                return True
        return False

    def running_team_ids(self) -> list[str]:
        return [team_id for team_id in self.team_sessions if self.is_team_running(team_id)]

    def get_leader_session_id(self, team_id: str) -> str | None:
        state = self.runtime.get(team_id)
        if state is None or not state.leader_session_id:
            return None
        return state.leader_session_id

    def list_dispatches(self, team_id: str) -> list[DispatchTask]:
        return [task for task in self.dispatches.values() if task.team_id == team_id]

    def send_to_leader(self, team_id: str, text: str) -> LeaderAck:
        trimmed = text.strip()
        if not trimmed:
            return LeaderAck(accepted=False, message="Message cannot be empty")

        state = self.runtime.get(team_id)
        if state is None or not state.leader_session_id:
            return LeaderAck(accepted=False, message=f'Leader session not found for team "{team_id}"')

        leader = self.sessions.get(state.leader_session_id)
        if leader is None or not leader.is_running:
            return LeaderAck(accepted=False, message="Leader session is not running")

        payload = trimmed if state.primed else self._leader_envelope(state, trimmed)
        state.primed = True
        self.sessions.write(state.leader_session_id, f"{payload}\r")
        logger.info("Sent user message to leader (team=%s)", team_id)
        return LeaderAck(accepted=True, message="Message delivered to leader")

    def _leader_envelope(self, state: TeamRuntimeState, user_text: str) -> str:
        delegates = [member for member in state.config.members if member.name != state.leader_name]
        member_lines = []
        for member in delegates:
            role = f" ({member.role})" if member.role else ""
            hint = f' - "{member.task[:120]}"' if member.task else ""
            member_lines.append(f"  - {member.name}{role}{hint}")

        # No literal marker here: the terminal echoes this text back into the leader's output.
        return "\n".join(
            [
                "You are the team lead orchestrator. Coordinate the team to complete the user request.",
                'Delegate work using machine-readable tags: DOUBLE-BRACKET DISPATCH member="<name>" '
                'task="<task>" DOUBLE-BRACKET',
                "(Replace DOUBLE-BRACKET with [[ and ]] respectively)",
                f"IMPORTANT: NEVER dispatch to yourself ({state.leader_name}). Only dispatch to:",
                "\n".join(member_lines) or "  (no members available)",
                "When a member finishes, their result is relayed back to you automatically.",
                "",
                f"User request: {user_text}",
            ]
        )

    def _handle_session_output(self, session_id: str, data: str) -> None:
        team_id = self.session_teams.get(session_id)
        if team_id is None:
            return
        state = self.runtime.get(team_id)
        if state is None:
            return
        if session_id == state.leader_session_id:
            self._handle_leader_output(state, session_id, data)
        else:
            self._handle_member_output(state, session_id, data)

    def _handle_leader_output(self, state: TeamRuntimeState, session_id: str, data: str) -> None:
        buffer = append_trailing(
            self.leader_buffers.get(session_id, ""),
            data,
            self.config.teams.leader_buffer_chars,
        )
        scan = scan_dispatch_markers(buffer)
        self.leader_buffers[session_id] = buffer[scan.consumed :]
        for marker in scan.markers:
            self._handle_dispatch_request(state, marker.member, marker.task)

    def _handle_dispatch_request(self, state: TeamRuntimeState, requested: str, task: str) -> None:
        team_id = state.team_id
        resolved = resolve_member_name(state.members, requested)
        resolved_session_id = state.members.get(resolved) if resolved else None
        task_id = uuid.uuid4().hex

        is_self_by_name = state.leader_name in {requested, resolved}
        is_self_by_session = resolved_session_id is not None and resolved_session_id == state.leader_session_id
        logger.debug(
            'Dispatch parse: requested="%s" resolved="%s" leader="%s" self_by_name=%s self_by_session=%s',
            requested,
            resolved,
            state.leader_name,
            is_self_by_name,
            is_self_by_session,
        )

        if is_self_by_name or is_self_by_session:
            logger.warning('Blocked self-dispatch to leader "%s" in team=%s', requested, team_id)
            self._emit_update(
                team_id,
                task_id,
                resolved or requested,
                DispatchStatus.FAILED,
                "Self-dispatch not supported (cannot run a task inside your own session)",
            )
            delegates = self._delegate_names(state)
            self._notify_leader(
                state,
                [
                    f"Self-dispatch is not allowed. You cannot dispatch tasks to yourself ({state.leader_name}).",
                    f"Available members to dispatch to: {', '.join(delegates) or '(none)'}",
                ],
            )
            return

        if resolved is None or resolved_session_id is None:
            logger.warning('Dispatch target "%s" not found in team=%s', requested, team_id)
            self._emit_update(team_id, task_id, requested, DispatchStatus.FAILED, f'Member "{requested}" not found')
            self._notify_leader(
                state,
                [
                    f'Dispatch failed: member "{requested}" not found.',
                    f"Available members: {', '.join(state.members) or '(none)'}.",
                ],
            )
            return

        target = self.sessions.get(resolved_session_id)
        if target is None or not target.is_running:
            self._emit_update(team_id, task_id, resolved, DispatchStatus.FAILED, f'Member "{resolved}" is not running')
            self._notify_leader(state, [f'Dispatch failed: member "{resolved}" is not running.'])
            return

        if resolved != requested:
            logger.info('Dispatch task=%s requested="%s" resolved="%s" (name normalized)', task_id, requested, resolved)

        self._emit_update(team_id, task_id, resolved, DispatchStatus.QUEUED)
        self.active_tasks[resolved_session_id] = task_id
        self.first_output_seen.discard(resolved_session_id)
        self._emit_update(team_id, task_id, resolved, DispatchStatus.RUNNING, "command issued")
        self._spawn_background(self._send_task(team_id, resolved, resolved_session_id, task_id, task))

    async def _send_task(self, team_id: str, member_name: str, session_id: str, task_id: str, task: str) -> None:
        wrapped = "\n".join([task, "", result_instruction(task_id)])
        try:
            path = await self._write_scratch(f"member-task-{task_id}.txt", wrapped)
        except OSError as exc:
            if self.active_tasks.get(session_id) == task_id:
                del self.active_tasks[session_id]
                self.first_output_seen.discard(session_id)
            self._emit_update(team_id, task_id, member_name, DispatchStatus.FAILED, f"Failed to write task file: {exc}")
            return

        if session_id not in self.session_teams:
            return
        command = f"{self._print_invocation(path)}; {done_sentinel_echo(task_id)}"
        self._safe_write(session_id, f"{command}\r")

    def _handle_member_output(self, state: TeamRuntimeState, session_id: str, data: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        member_name = session.member_name

        active_task_id = self.active_tasks.get(session_id)
        if active_task_id and session_id not in self.first_output_seen:
            self.first_output_seen.add(session_id)
            self._emit_update(state.team_id, active_task_id, member_name, DispatchStatus.RUNNING, "receiving output")

        buffer = append_trailing(
            self.member_buffers.get(session_id, ""),
            data,
            self.config.teams.member_buffer_chars,
        )
        results = scan_result_markers(buffer)
        done = scan_done_markers(buffer)
        consumed = max(results.consumed, done.consumed)
        self.member_buffers[session_id] = buffer[consumed:]

        for marker in results.markers:
            relay = "\n".join(["", f"[Member Result] {member_name} finished task {marker.task_id}", marker.body, ""])
            self._safe_write(state.leader_session_id, f"{relay}\r")
            self.active_tasks.pop(session_id, None)
            self.first_output_seen.discard(session_id)
            self._emit_update(state.team_id, marker.task_id, member_name, DispatchStatus.SUCCEEDED)

        for marker in done.markers:
            if self.active_tasks.get(session_id) != marker.task_id:
                continue
            # Shell finished without a structured result; count it as done anyway.
            del self.active_tasks[session_id]
            self.first_output_seen.discard(session_id)
            self._emit_update(
                state.team_id, marker.task_id, member_name, DispatchStatus.SUCCEEDED, "command completed"
            )

    def _delegate_names(self, state: TeamRuntimeState) -> list[str]:
        return [
            name
            for name, session_id in state.members.items()
            if name != state.leader_name and session_id != state.leader_session_id
        ]

    def _notify_leader(self, state: TeamRuntimeState, lines: list[str]) -> None:
        if not state.leader_session_id:
            return
        notice = "\n".join(["", *(f"[System] {line}" for line in lines), f"[System] {DISPATCH_FORMAT_HINT}", ""])
        self._safe_write(state.leader_session_id, f"{notice}\r")

    def _emit_update(
        self,
        team_id: str,
        task_id: str,
        member_name: str,
        status: DispatchStatus,
        detail: str | None = None,
    ) -> None:
        task = self.dispatches.get(task_id)
        if task is None:
            task = DispatchTask(task_id=task_id, team_id=team_id, member_name=member_name)
            self.dispatches[task_id] = task
        task.status = status
        task.detail = detail
        task.updated_at = datetime.now(timezone.utc)

        update = DispatchUpdate(
            team_id=team_id,
            task_id=task_id,
            member_name=member_name,
            status=status,
            detail=detail,
        )
        self._events.emit("dispatch_update", update)
        logger.info("Dispatch %s team=%s task=%s member=%s", status.value, team_id, task_id, member_name)

    def _discard_routing(self, team_id: str) -> None:
        state = self.runtime.pop(team_id, None)
        session_ids = set(self.team_sessions.get(team_id, []))
        if state is not None:
            session_ids.update(state.session_ids)
        for session_id in session_ids:
            self.session_teams.pop(session_id, None)
            self.leader_buffers.pop(session_id, None)
            self.member_buffers.pop(session_id, None)
            self.active_tasks.pop(session_id, None)
            self.first_output_seen.discard(session_id)

    def _safe_write(self, session_id: str, data: str) -> None:
        try:
            self.sessions.write(session_id, data)
        except SessionNotFoundError:
            logger.debug("Dropped write to unknown session %s", session_id)

    def _agent_invocation(self) -> str:
        return shlex.join([self.config.agent.command, *self.config.agent.args])

    def _print_invocation(self, task_path: Path) -> str:
        flag = shlex.quote(self.config.agent.print_flag)
        return f'{self._agent_invocation()} {flag} "$(cat {shlex.quote(str(task_path))})"'

    async def _startup_command(self, member: MemberConfig, session_id: str, is_leader: bool) -> str:
        if is_leader:
            return self._agent_invocation()
        if member.task:
            path = await self._write_scratch(f"team-task-{session_id}.txt", member.task)
            return self._print_invocation(path)
        return f"echo {shlex.quote(f'{member.name} ready for delegated tasks')}"

    async def _inject_startup(self, session_id: str, line: str) -> None:
        # The login shell has to finish its profile before it reads a command line.
        await asyncio.sleep(self.config.teams.settle_delay)
        self._safe_write(session_id, f"{line}\r")
        logger.debug("Sent startup command to session %s", session_id)

    async def _write_scratch(self, filename: str, text: str) -> Path:
        path = self.scratch_dir / filename
        await asyncio.to_thread(self._write_text, path, text)
        return path

    def _write_text(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    async def _resolve_cwd(self, preferred: str | None) -> str:
        if preferred:
            candidate = os.path.expanduser(preferred)
            if await asyncio.to_thread(os.path.isdir, candidate):
                return candidate
            logger.warning('cwd "%s" not accessible, falling back to home directory', preferred)
        return str(Path.home())

    def _spawn_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)
