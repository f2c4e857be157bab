from __future__ import annotations


class TeamdeckError(Exception):
    """Base class for errors raised by the session and team runtime."""


class SessionNotFoundError(TeamdeckError, LookupError):
    def __init__(self, session_id: str):
        super().__init__(f'Session "{session_id}" not found')
        self.session_id = session_id


class SessionExistsError(TeamdeckError):
    def __init__(self, session_id: str):
        super().__init__(f'Session with id "{session_id}" already exists')
        self.session_id = session_id


class TeamNotFoundError(TeamdeckError, LookupError):
    def __init__(self, team_id: str):
        super().__init__(f'Team config not found for team_id="{team_id}"')
        self.team_id = team_id


class TeamAlreadyRunningError(TeamdeckError):
    def __init__(self, team_id: str):
        super().__init__(f'Team "{team_id}" already has running sessions')
        self.team_id = team_id


class TeamConfigError(TeamdeckError):
    pass
