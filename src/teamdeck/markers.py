"""Scanners for the bracketed markers exchanged through terminal output.

Leader sessions emit ``[[DISPATCH member="..." task="..."]]``; member sessions
answer with ``[[RESULT task_id="..."]]...[[/RESULT]]`` and a shell-echoed
``__DISPATCH_DONE__ task_id=...`` sentinel. Every scanner is a pure function of
the buffer: it returns the complete markers found and how many leading
characters they cover, so callers can drop exactly that prefix and keep any
partial marker for the next chunk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DISPATCH_MARKER_RE = re.compile(
    r"""\[\[DISPATCH\s+(?P<attrs>(?:"[^"]*"|'[^']*'|[^"'\]]|\](?!\]))*)\]\]""",
)
# Shortest span up to the first "]]"; used when quotes in a marker are unbalanced.
LENIENT_DISPATCH_RE = re.compile(r"\[\[DISPATCH\s+(?P<attrs>.*?)\]\]", re.DOTALL)
DISPATCH_START_RE = re.compile(r"\[\[DISPATCH\s")
ATTRIBUTE_RE = re.compile(r"""(?P<key>\w+)\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')""")
RESULT_MARKER_RE = re.compile(
    r"""\[\[RESULT\s+task_id=(?:"(?P<dq>[^"]+)"|'(?P<sq>[^']+)')\s*\]\](?P<body>.*?)\[\[/RESULT\]\]""",
    re.DOTALL,
)
# The lookahead keeps a task id split across chunks from matching early.
DONE_MARKER_RE = re.compile(r"__DISPATCH_DONE__\s+task_id=(?P<task_id>[A-Za-z0-9_-]+)(?=\s)")

DONE_SENTINEL = "__DISPATCH_DONE__"


@dataclass(slots=True, frozen=True)
class DispatchMarker:
    member: str
    task: str
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class ResultMarker:
    task_id: str
    body: str
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class DoneMarker:
    task_id: str
    start: int
    end: int


@dataclass(slots=True)
class ScanResult(Generic[T]):
    markers: list[T] = field(default_factory=list)
    consumed: int = 0


def parse_attributes(source: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in ATTRIBUTE_RE.finditer(source):
        value = match.group("dq")
        if value is None:
            value = match.group("sq") or ""
        attrs[match.group("key")] = value.strip()
    return attrs


def _match_dispatch(buffer: str, start: int) -> re.Match[str] | None:
    """Match the marker opening at ``start``, or ``None`` while it may still be incomplete.

    Quote-aware matching lets quoted values contain ``]]``. A stray quote breaks
    that, so the shortest span is used instead once the marker is evidently
    over: a line break or another marker follows it, or the quote-aware match
    would swallow the next marker.
    """
    balanced = DISPATCH_MARKER_RE.match(buffer, start)
    lenient = LENIENT_DISPATCH_RE.match(buffer, start)
    if lenient is None:
        return balanced
    next_start = DISPATCH_START_RE.search(buffer, lenient.end())
    if balanced is not None:
        if next_start is not None and next_start.start() < balanced.end():
            return lenient
        return balanced
    if next_start is not None or "\n" in buffer[lenient.end() :]:
        logger.debug("Unbalanced quotes in dispatch marker: %r", lenient.group(0)[:200])
        return lenient
    return None


def scan_dispatch_markers(buffer: str) -> ScanResult[DispatchMarker]:
    result: ScanResult[DispatchMarker] = ScanResult()
    while True:
        opening = DISPATCH_START_RE.search(buffer, result.consumed)
        if opening is None:
            break
        match = _match_dispatch(buffer, opening.start())
        if match is None:
            break
        result.consumed = match.end()
        attrs = parse_attributes(match.group("attrs"))
        member = attrs.get("member", "").strip()
        task = attrs.get("task", "").strip()
        if not member or not task:
            logger.debug("Ignoring dispatch marker without member/task: %r", match.group(0)[:200])
            continue
        result.markers.append(DispatchMarker(member=member, task=task, start=match.start(), end=match.end()))
    return result


def scan_result_markers(buffer: str) -> ScanResult[ResultMarker]:
    result: ScanResult[ResultMarker] = ScanResult()
    for match in RESULT_MARKER_RE.finditer(buffer):
        task_id = (match.group("dq") or match.group("sq") or "").strip()
        result.markers.append(
            ResultMarker(task_id=task_id, body=match.group("body").strip(), start=match.start(), end=match.end())
        )
        result.consumed = match.end()
    return result


def scan_done_markers(buffer: str) -> ScanResult[DoneMarker]:
    result: ScanResult[DoneMarker] = ScanResult()
    for match in DONE_MARKER_RE.finditer(buffer):
        result.markers.append(DoneMarker(task_id=match.group("task_id"), start=match.start(), end=match.end()))
        result.consumed = match.end()
    return result


def append_trailing(buffer: str, chunk: str, limit: int) -> str:
    combined = buffer + chunk
    if len(combined) > limit:
        return combined[-limit:]
    return combined


def result_instruction(task_id: str) -> str:
    return f'Return final answer wrapped exactly as: [[RESULT task_id="{task_id}"]]...[[/RESULT]]'


def done_sentinel_echo(task_id: str) -> str:
    """Shell command printing the done sentinel.

    The sentinel is split into two adjacent quoted words so the terminal's
    echo of the typed command line never contains it verbatim.
    """
    head, tail = DONE_SENTINEL[:11], DONE_SENTINEL[11:]
    return f'echo "{head}""{tail} task_id={task_id}"'
