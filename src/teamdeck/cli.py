from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any, Coroutine, Sequence

import click
import yaml
from pydantic import ValidationError

from .client import HubClient
from .config import load_config, teams_dir
from .errors import TeamdeckError
from .hub import ConnectionHub
from .logging import configure_logging, get_logger
from .models import MemberRequest, TeamCreateRequest
from .orchestrator import TeamOrchestrator
from .protocol import SendToLeaderMessage
from .session_manager import SessionManager
from .team_store import TeamStore

logger = get_logger(__name__)


class RuntimeContext:
    def __init__(self, config_path: Path | None, socket_path: Path | None):
        overrides: dict[str, Any] = {}
        if socket_path:
            overrides["hub.socket_path"] = str(socket_path)
            overrides["hub.transport"] = "unix_socket"

        self.config = load_config(config_path=config_path, cli_overrides=overrides)
        self.store = TeamStore(teams_dir(self.config))


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path, dir_okay=False), default=None)
@click.option("--socket", "socket_path", type=click.Path(path_type=Path, dir_okay=False), default=None)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--log-file", type=click.Path(path_type=Path, dir_okay=False), default=None, help="Also write logs here.")
@click.pass_context
def main(
    ctx: click.Context, config_path: Path | None, socket_path: Path | None, verbose: bool, log_file: Path | None
) -> None:
    """Teamdeck: terminal sessions for agent teams."""
    configure_logging(verbose=verbose, log_file=log_file)
    ctx.obj = RuntimeContext(config_path, socket_path)


@main.command()
@click.option("--launch", "launch_ids", multiple=True, help="Team id to launch on startup (repeatable).")
@click.pass_obj
def serve(runtime: RuntimeContext, launch_ids: tuple[str, ...]) -> None:
    """Run the session server until interrupted."""
    _run(_serve(runtime, launch_ids))


@main.command()
@click.option("--file", "file_path", type=click.Path(path_type=Path, dir_okay=False, exists=True), default=None)
@click.option("--name", type=str, default=None)
@click.option("--cwd", type=click.Path(path_type=Path, file_okay=False), default=None)
@click.option("--description", type=str, default=None)
@click.option("--member", "members", multiple=True, help="NAME[:ROLE[:MODEL]] (repeatable).")
@click.option("--task", "tasks", multiple=True, help="NAME=TEXT initial task for a member (repeatable).")
@click.option("--launch", is_flag=True, default=False, help="Serve and launch the team right away.")
@click.pass_obj
def create(
    runtime: RuntimeContext,
    file_path: Path | None,
    name: str | None,
    cwd: Path | None,
    description: str | None,
    members: tuple[str, ...],
    tasks: tuple[str, ...],
    launch: bool,
) -> None:
    """Create a team from flags or a YAML file."""
    if file_path:
        request = _load_team_file(file_path)
    else:
        request = _request_from_flags(name, cwd, description, members, tasks)

    async def _create() -> str:
        teams = TeamOrchestrator(runtime.config, SessionManager(runtime.config.session), runtime.store)
        try:
            return await teams.create_team(request)
        finally:
            await teams.close()

    team_id = _run(_create())
    click.echo(team_id)

    if launch or request.launch_immediately:
        _run(_serve(runtime, [team_id]))


@main.command("teams")
@click.pass_obj
def list_teams(runtime: RuntimeContext) -> None:
    """List stored teams."""
    configs = _run(runtime.store.list())
    if not configs:
        click.echo("No teams")
        return
    for team_id, config in configs.items():
        leader = config.leader()
        names = ", ".join(member.name for member in config.members)
        click.echo(f"- {team_id}: {config.name} (leader={leader.name if leader else '-'}) [{names}]")


@main.command()
@click.argument("team_id")
@click.pass_obj
def destroy(runtime: RuntimeContext, team_id: str) -> None:
    """Delete a stored team."""
    if not _run(runtime.store.delete(team_id)):
        raise click.ClickException(f'Team "{team_id}" not found')
    click.echo(f"Destroyed {team_id}")


@main.command()
@click.pass_obj
def ps(runtime: RuntimeContext) -> None:
    """Show the sessions of a running server."""

    async def _ps() -> list:
        async with HubClient(runtime.config.hub) as client:
            message = await client.receive_until("process_list")
            return message.sessions

    sessions = _run(_connect_guard(runtime, _ps()))
    if not sessions:
        click.echo("No sessions")
        return
    for session in sessions:
        exit_info = f" exit={session.exit_code}" if session.exit_code is not None else ""
        click.echo(
            f"- {session.id} {session.member_name} team={session.team_id} pid={session.pid} "
            f"{session.status.value}{exit_info}"
        )


@main.command()
@click.argument("team_id")
@click.argument("text")
@click.pass_obj
def send(runtime: RuntimeContext, team_id: str, text: str) -> None:
    """Send a message to a running team's leader."""

    async def _send():
        async with HubClient(runtime.config.hub) as client:
            await client.send(SendToLeaderMessage(team_id=team_id, text=text))
            return await client.receive_until("leader_ack")

    ack = _run(_connect_guard(runtime, _send()))
    if not ack.accepted:
        raise click.ClickException(ack.message)
    click.echo(ack.message)


async def _serve(runtime: RuntimeContext, launch_ids: Sequence[str]) -> None:
    sessions = SessionManager(runtime.config.session)
    teams = TeamOrchestrator(runtime.config, sessions, runtime.store)
    hub = ConnectionHub(runtime.config.hub, sessions, teams)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await hub.start()
    try:
        for team_id in launch_ids:
            launched = await teams.launch_team(team_id)
            click.echo(f"Launched {team_id} with {len(launched.session_ids)} sessions")
        await stop_event.wait()
    finally:
        logger.info("Shutting down, killing %d sessions", len(sessions.list_sessions()))
        sessions.kill_all()
        await hub.stop()
        await teams.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def _connect_guard(runtime: RuntimeContext, coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return await coro
    except asyncio.TimeoutError as exc:
        raise click.ClickException("timed out waiting for the server") from exc
    except (OSError, asyncio.IncompleteReadError) as exc:
        hub = runtime.config.hub
        where = hub.socket_path if hub.transport == "unix_socket" else f"{hub.host}:{hub.port}"
        raise click.ClickException(f"cannot reach teamdeck server at {where}: {exc}") from exc


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return asyncio.run(coro)
    except TeamdeckError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_team_file(path: Path) -> TeamCreateRequest:
    parsed = yaml.safe_load(path.read_text()) or {}
    if not isinstance(parsed, dict):
        raise click.ClickException("team file must contain a mapping")
    try:
        request = TeamCreateRequest.model_validate(parsed)
    except ValidationError as exc:
        raise click.ClickException(f"invalid team file: {exc}") from exc

    cwd = Path(request.cwd).expanduser()
    if not cwd.is_absolute():
        request.cwd = str((path.parent / cwd).resolve())
    return request


def _request_from_flags(
    name: str | None,
    cwd: Path | None,
    description: str | None,
    members: tuple[str, ...],
    tasks: tuple[str, ...],
) -> TeamCreateRequest:
    if not name:
        raise click.ClickException("--name is required unless --file is given")
    if not members:
        raise click.ClickException("at least one --member is required")

    task_by_member: dict[str, str] = {}
    for item in tasks:
        member_name, sep, text = item.partition("=")
        if not sep or not member_name.strip():
            raise click.ClickException(f"--task must look like NAME=TEXT, got {item!r}")
        task_by_member[member_name.strip()] = text

    try:
        requests = [_parse_member(spec, task_by_member) for spec in members]
        return TeamCreateRequest(
            name=name,
            description=description,
            cwd=str((cwd or Path.cwd()).resolve()),
            members=requests,
        )
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_member(spec: str, task_by_member: dict[str, str]) -> MemberRequest:
    parts = spec.split(":")
    if len(parts) > 3:
        raise click.ClickException(f"--member must look like NAME[:ROLE[:MODEL]], got {spec!r}")
    member_name = parts[0].strip()
    role = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None
    model = parts[2].strip() if len(parts) > 2 and parts[2].strip() else None
    return MemberRequest(name=member_name, role=role, model=model, task=task_by_member.get(member_name))
