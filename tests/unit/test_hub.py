from __future__ import annotations

import json

import pytest

from teamdeck.hub import ConnectionHub
from teamdeck.models import DispatchStatus, DispatchUpdate
from teamdeck.protocol import ProcessListMessage


class FakeTransport:
    def __init__(self) -> None:
        self.closing = False
        self.buffer_size = 0

    def is_closing(self) -> bool:
        return self.closing

    def get_write_buffer_size(self) -> int:
        return self.buffer_size


class FakeWriter:
    def __init__(self) -> None:
        self.transport = FakeTransport()
        self.chunks: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    def close(self) -> None:
        self.closed = True
        self.transport.closing = True

    def messages(self) -> list[dict]:
        return [json.loads(chunk.decode("utf-8")) for chunk in self.chunks]

    def types(self) -> list[str]:
        return [message["type"] for message in self.messages()]


@pytest.fixture()
def hub(app_config, sessions, orchestrator) -> ConnectionHub:
    return ConnectionHub(app_config.hub, sessions, orchestrator)


async def _spawn(sessions, session_id: str = "s1") -> None:
    await sessions.spawn(session_id, "team-1", "Worker", "/bin/bash", cwd="/tmp")


@pytest.mark.asyncio
async def test_connect_sends_process_list(hub, sessions) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    hub.connect(writer)

    [message] = writer.messages()
    assert message["type"] == "process_list"
    assert [s["id"] for s in message["sessions"]] == ["s1"]
    assert message["sessions"][0]["status"] == "running"


@pytest.mark.asyncio
async def test_subscribe_unknown_session_is_an_error(hub) -> None:
    writer = FakeWriter()
    connection = hub.connect(writer)
    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "nope"}')

    assert writer.messages()[-1] == {"type": "error", "message": 'Session "nope" not found'}
    assert connection.subscriptions == set()


@pytest.mark.asyncio
async def test_input_requires_subscription(hub, sessions, process_factory) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    connection = hub.connect(writer)

    hub.handle_raw(connection, '{"type": "input", "session_id": "s1", "data": "ls\\r"}')
    assert writer.messages()[-1]["type"] == "error"
    assert process_factory.processes[0].written == []

    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')
    hub.handle_raw(connection, '{"type": "input", "session_id": "s1", "data": "ls\\r"}')
    assert process_factory.processes[0].written_text == "ls\r"


@pytest.mark.asyncio
async def test_history_then_output_is_gapless(hub, sessions, process_factory) -> None:
    await _spawn(sessions)
    process = process_factory.processes[0]
    process.emit("before ")

    subscriber = FakeWriter()
    bystander = FakeWriter()
    connection = hub.connect(subscriber)
    hub.connect(bystander)

    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')
    process.emit("after")

    history, output = subscriber.messages()[1:]
    assert history == {"type": "history", "session_id": "s1", "data": "before "}
    assert output == {"type": "output", "session_id": "s1", "data": "after"}
    assert history["data"] + output["data"] == "before after"
    assert bystander.types() == ["process_list"]


@pytest.mark.asyncio
async def test_history_is_sent_even_when_empty(hub, sessions) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    connection = hub.connect(writer)
    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')
    assert writer.messages()[-1] == {"type": "history", "session_id": "s1", "data": ""}


@pytest.mark.asyncio
async def test_exit_goes_to_subscribers_and_start_goes_to_everyone(
    hub, sessions, process_factory
) -> None:
    await _spawn(sessions)
    subscriber = FakeWriter()
    other = FakeWriter()
    connection = hub.connect(subscriber)
    hub.connect(other)
    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')

    await _spawn(sessions, "s2")
    process_factory.processes[0].exit(7)

    assert subscriber.messages()[-1] == {"type": "process_exit", "session_id": "s1", "exit_code": 7}
    assert other.messages()[-1] == {
        "type": "process_started",
        "session_id": "s2",
        "member_name": "Worker",
        "team_id": "team-1",
    }


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_stops_output(hub, sessions, process_factory) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    connection = hub.connect(writer)
    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')
    hub.handle_raw(connection, '{"type": "unsubscribe", "session_id": "s1"}')
    hub.handle_raw(connection, '{"type": "unsubscribe", "session_id": "s1"}')

    process_factory.processes[0].emit("ignored")
    assert writer.types() == ["process_list", "history"]


@pytest.mark.asyncio
async def test_resize_is_forwarded_without_subscription(hub, sessions, process_factory) -> None:
    await _spawn(sessions)
    connection = hub.connect(FakeWriter())
    hub.handle_raw(connection, '{"type": "resize", "session_id": "s1", "cols": 90, "rows": 20}')
    assert (sessions.get("s1").cols, sessions.get("s1").rows) == (90, 20)


@pytest.mark.asyncio
async def test_malformed_messages_get_errors_and_connection_survives(hub, sessions) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    connection = hub.connect(writer)

    hub.handle_raw(connection, "not json")
    hub.handle_raw(connection, '{"type": "explode"}')
    hub.handle_raw(connection, '{"type": "subscribe"}')
    hub.handle_raw(connection, '{"type": "list_sessions"}')

    messages = writer.messages()
    assert [m["type"] for m in messages] == ["process_list", "error", "error", "error", "process_list"]
    assert all(m["message"].startswith("invalid message:") for m in messages[1:4])
    assert connection.id in hub.clients


@pytest.mark.asyncio
async def test_send_to_leader_ack_goes_only_to_sender(hub) -> None:
    sender = FakeWriter()
    other = FakeWriter()
    connection = hub.connect(sender)
    hub.connect(other)

    hub.handle_raw(connection, '{"type": "send_to_leader", "team_id": "t-404", "text": "hello"}')

    assert sender.messages()[-1] == {
        "type": "leader_ack",
        "team_id": "t-404",
        "accepted": False,
        "message": 'Leader session not found for team "t-404"',
    }
    assert other.types() == ["process_list"]


@pytest.mark.asyncio
async def test_dispatch_updates_are_broadcast(hub, orchestrator) -> None:
    first = FakeWriter()
    second = FakeWriter()
    hub.connect(first)
    hub.connect(second)

    orchestrator._events.emit(
        "dispatch_update",
        DispatchUpdate(team_id="t", task_id="x", member_name="Worker", status=DispatchStatus.QUEUED),
    )

    for writer in (first, second):
        assert writer.messages()[-1] == {
            "type": "dispatch_update",
            "team_id": "t",
            "task_id": "x",
            "member_name": "Worker",
            "status": "queued",
            "detail": None,
        }


@pytest.mark.asyncio
async def test_slow_client_is_dropped_without_affecting_others(
    hub, sessions, process_factory
) -> None:
    await _spawn(sessions)
    slow = FakeWriter()
    fast = FakeWriter()
    slow_connection = hub.connect(slow)
    fast_connection = hub.connect(fast)
    hub.handle_raw(slow_connection, '{"type": "subscribe", "session_id": "s1"}')
    hub.handle_raw(fast_connection, '{"type": "subscribe", "session_id": "s1"}')

    slow.transport.buffer_size = hub.config.max_send_buffer + 1
    process_factory.processes[0].emit("data")

    assert slow.closed
    assert slow_connection.id not in hub.clients
    assert fast.messages()[-1]["data"] == "data"


@pytest.mark.asyncio
async def test_closing_transport_is_skipped(hub, sessions) -> None:
    writer = FakeWriter()
    connection = hub.connect(writer)
    writer.transport.closing = True

    assert hub.send(connection, ProcessListMessage(sessions=[])) is False
    assert writer.types() == ["process_list"]


@pytest.mark.asyncio
async def test_stop_unregisters_listeners(hub, sessions, process_factory) -> None:
    await _spawn(sessions)
    writer = FakeWriter()
    connection = hub.connect(writer)
    hub.handle_raw(connection, '{"type": "subscribe", "session_id": "s1"}')

    await hub.stop()
    process_factory.processes[0].emit("late")

    assert writer.closed
    assert "output" not in writer.types()
    assert hub.clients == {}
