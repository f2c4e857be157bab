from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path

from pydantic import ValidationError

from .errors import TeamNotFoundError
from .logging import get_logger
from .models import TeamConfig

logger = get_logger(__name__)

CONFIG_FILENAME = "config.json"
INBOX_DIRNAME = "inboxes"


class TeamStore:
    """Durable team configs, one ``<root>/<team_id>/config.json`` per team."""

    def __init__(self, root: Path):
        self.root = root

    def team_dir(self, team_id: str) -> Path:
        if not team_id or "/" in team_id or "\\" in team_id or team_id in {".", ".."}:
            raise TeamNotFoundError(team_id)
        return self.root / team_id

    def config_path(self, team_id: str) -> Path:
        return self.team_dir(team_id) / CONFIG_FILENAME

    async def save(self, team_id: str, config: TeamConfig) -> Path:
        return await asyncio.to_thread(self._save, team_id, config)

    async def load(self, team_id: str) -> TeamConfig:
        return await asyncio.to_thread(self._load, team_id)

    async def list(self) -> dict[str, TeamConfig]:
        return await asyncio.to_thread(self._list)

    async def delete(self, team_id: str) -> bool:
        return await asyncio.to_thread(self._delete, team_id)

    def exists(self, team_id: str) -> bool:
        try:
            return self.config_path(team_id).is_file()
        except TeamNotFoundError:
            return False

    def _save(self, team_id: str, config: TeamConfig) -> Path:
        team_dir = self.team_dir(team_id)
        (team_dir / INBOX_DIRNAME).mkdir(parents=True, exist_ok=True)
        path = team_dir / CONFIG_FILENAME
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)
        return path

    def _load(self, team_id: str) -> TeamConfig:
        path = self.config_path(team_id)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return TeamConfig.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.debug("Failed to read team config %s: %s", path, exc)
            raise TeamNotFoundError(team_id) from exc

    def _list(self) -> dict[str, TeamConfig]:
        configs: dict[str, TeamConfig] = {}
        if not self.root.is_dir():
            return configs
        for team_dir in sorted(self.root.iterdir()):
            if not team_dir.is_dir():
                continue
            try:
                configs[team_dir.name] = self._load(team_dir.name)
            except TeamNotFoundError:
                logger.warning("Skipping unreadable team config in %s", team_dir)
        return configs

    def _delete(self, team_id: str) -> bool:
        team_dir = self.team_dir(team_id)
        if not team_dir.exists():
            return False
        shutil.rmtree(team_dir)
        return True
