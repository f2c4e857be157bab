from __future__ import annotations

import asyncio
from pathlib import Path

from pydantic import BaseModel

from .hub import READ_LIMIT
from .models import HubConfig
from .protocol import ServerMessage, parse_server_message


class HubClient:
    """Minimal client for a running hub, used by the CLI."""

    def __init__(self, config: HubConfig):
        self.config = config
        self.terminator = config.message_terminator.encode("utf-8")
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def __aenter__(self) -> "HubClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        if self.config.transport == "unix_socket":
            self._reader, self._writer = await asyncio.open_unix_connection(
                str(Path(self.config.socket_path).expanduser()), limit=READ_LIMIT
            )
        else:
            self._reader, self._writer = await asyncio.open_connection(
                self.config.host, self.config.port, limit=READ_LIMIT
            )

    async def close(self) -> None:
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except ConnectionError:
            pass
        self._writer = None
        self._reader = None

    async def send(self, message: BaseModel) -> None:
        if self._writer is None:
            raise ConnectionError("client is not connected")
        self._writer.write(message.model_dump_json().encode("utf-8") + self.terminator)
        await self._writer.drain()

    async def receive(self) -> ServerMessage:
        if self._reader is None:
            raise ConnectionError("client is not connected")
        while True:
            raw = await self._reader.readuntil(self.terminator)
            chunk = raw[: -len(self.terminator)].strip()
            if chunk:
                return parse_server_message(chunk)

    async def receive_until(self, message_type: str, timeout: float = 5.0) -> ServerMessage:
        """Read messages until one of ``message_type`` arrives; others are discarded."""

        async def _wait() -> ServerMessage:
            while True:
                message = await self.receive()
                if message.type == message_type:
                    return message

        return await asyncio.wait_for(_wait(), timeout=timeout)
