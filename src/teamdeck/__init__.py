"""PTY-backed agent teams with a leader/member dispatch protocol."""

__version__ = "0.1.0"
