"""JSON messages exchanged between the hub and its clients.

Each message is one JSON object with a ``type`` field, framed by the hub's
configured terminator.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import DispatchStatus, SessionSummary


class _Message(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SubscribeMessage(_Message):
    type: Literal["subscribe"] = "subscribe"
    session_id: str


class UnsubscribeMessage(_Message):
    type: Literal["unsubscribe"] = "unsubscribe"
    session_id: str


class InputMessage(_Message):
    type: Literal["input"] = "input"
    session_id: str
    data: str


class ResizeMessage(_Message):
    type: Literal["resize"] = "resize"
    session_id: str
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class SendToLeaderMessage(_Message):
    type: Literal["send_to_leader"] = "send_to_leader"
    team_id: str
    text: str


class ListSessionsMessage(_Message):
    type: Literal["list_sessions"] = "list_sessions"


ClientMessage = Annotated[
    Union[
        SubscribeMessage,
        UnsubscribeMessage,
        InputMessage,
        ResizeMessage,
        SendToLeaderMessage,
        ListSessionsMessage,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


class ProcessListMessage(_Message):
    type: Literal["process_list"] = "process_list"
    sessions: list[SessionSummary]


class OutputMessage(_Message):
    type: Literal["output"] = "output"
    session_id: str
    data: str


class HistoryMessage(_Message):
    type: Literal["history"] = "history"
    session_id: str
    data: str


class ProcessStartedMessage(_Message):
    type: Literal["process_started"] = "process_started"
    session_id: str
    member_name: str
    team_id: str


class ProcessExitMessage(_Message):
    type: Literal["process_exit"] = "process_exit"
    session_id: str
    exit_code: int


class DispatchUpdateMessage(_Message):
    type: Literal["dispatch_update"] = "dispatch_update"
    team_id: str
    task_id: str
    member_name: str
    status: DispatchStatus
    detail: str | None = None


class LeaderAckMessage(_Message):
    type: Literal["leader_ack"] = "leader_ack"
    team_id: str
    accepted: bool
    message: str


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    message: str


ServerMessage = Annotated[
    Union[
        ProcessListMessage,
        OutputMessage,
        HistoryMessage,
        ProcessStartedMessage,
        ProcessExitMessage,
        DispatchUpdateMessage,
        LeaderAckMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

server_message_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Validate one framed payload; raises ``pydantic.ValidationError``."""
    return client_message_adapter.validate_json(raw)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    return server_message_adapter.validate_json(raw)
