"""
Expect/Send Engine
==================

This module drives an interactive CLI dialogue over a Transport: text is
written to the device and the engine waits until the accumulated output
matches one of a set of patterns.

Features:
- Explicit state machine (idle, reading, matched, timed out, EOF)
- Append-only chunked buffer with a monotonic consumption cursor
- Incremental matching: each read rescans only a bounded lookback window
- Patterns may arrive split across any number of reads
- Earliest match wins when several patterns are armed
- Catch-all pattern returning whatever output is pending
- Timeouts and EOF returned as values with a snapshot of the unconsumed buffer
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern, Sequence, Union

from netbackup.error_handling import TransportEOF, TransportWriteError
from netbackup.transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Longest match that may straddle output already searched
SCAN_LOOKBACK = 8192


class _AnyPattern:
    """Catch-all pattern: matches any pending output."""

    def __repr__(self):
        return "ANY"


ANY = _AnyPattern()

PatternLike = Union[str, Pattern, _AnyPattern, None]


class ExpectStatus(Enum):
    MATCHED = "matched"
    TIMEOUT = "timeout"
    EOF = "eof"


class EngineState(Enum):
    IDLE = "idle"
    READING = "reading"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    EOF = "eof"


@dataclass
class ExpectResult:
    """Outcome of one ``expect`` call."""
    status: ExpectStatus
    index: int = -1
    match: Optional[re.Match] = None
    before: str = ""
    matched: str = ""
    last_buffer: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ExpectStatus.MATCHED


def compile_pattern(pattern: PatternLike):
    """Compile a string pattern; ``None`` and ``ANY`` become the catch-all."""
    if pattern is None or pattern is ANY or pattern == "":
        return ANY
    if isinstance(pattern, str):
        return re.compile(pattern)
    if hasattr(pattern, "search"):
        return pattern
    raise TypeError(f"Unsupported pattern type: {type(pattern).__name__}")


class ExpectEngine:
    """Send text and wait for patterns on a single Transport."""

    def __init__(self, transport: Transport, default_timeout: float = DEFAULT_TIMEOUT,
                 line_ending: str = "\n", scan_lookback: Optional[int] = SCAN_LOOKBACK):
        self.transport = transport
        self.default_timeout = default_timeout
        self.line_ending = line_ending
        self.scan_lookback = scan_lookback
        self.state = EngineState.IDLE
        self._chunks: List[str] = []
        self._length = 0
        self._cursor = 0
        self.last_result: Optional[ExpectResult] = None

    @property
    def buffer(self) -> str:
        """All text received since the last reset."""
        if len(self._chunks) > 1:
            self._chunks = ["".join(self._chunks)]
        return self._chunks[0] if self._chunks else ""

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def unconsumed(self) -> str:
        return self._tail(self._cursor)

    def _append(self, data: str):
        self._chunks.append(data)
        self._length += len(data)

    def _tail(self, start: int) -> str:
        """Text from buffer offset ``start`` to the end, joining only the chunks needed."""
        parts = []
        offset = self._length
        for chunk in reversed(self._chunks):
            if offset <= start:
                break
            offset -= len(chunk)
            parts.append(chunk if offset >= start else chunk[start - offset:])
        return "".join(reversed(parts))

    def send(self, text: str):
        """Write ``text`` followed by the line ending."""
        self.send_raw(text + self.line_ending)

    def send_raw(self, text: str):
        if not self.transport.is_open:
            raise TransportWriteError(f"{self.transport.name}: transport is closed")
        self.transport.write(text)

    def reconfigure_timeout(self, seconds: float):
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        self.default_timeout = seconds

    def reset(self):
        self._chunks = []
        self._length = 0
        self._cursor = 0
        self.state = EngineState.IDLE
        self.last_result = None

    def _search(self, patterns: List, scanned: int) -> Optional[ExpectResult]:
        """
        Find the earliest match in the unconsumed output.

        Output up to offset ``scanned`` already failed to match, so regular
        expressions are only rerun from ``scan_lookback`` characters before it.
        The window keeps one character of context so anchors and lookbehinds
        see the real preceding text.
        """
        window_start = self._cursor
        if self.scan_lookback is not None:
            window_start = max(self._cursor, scanned - self.scan_lookback)
        context = 1 if window_start > self._cursor else 0
        base = window_start - context
        text = self._tail(base)
        pending = self._length - self._cursor
        best = None

        for index, pattern in enumerate(patterns):
            if pattern is ANY:
                if not pending:
                    continue
                # Sorts after any real match that starts inside the pending text
                start = end = self._length
                candidate = ((start, index), index, None, start, end)
            else:
                m = pattern.search(text, context)
                if m is None:
                    continue
                start, end = base + m.start(), base + m.end()
                candidate = ((start, index), index, m, start, end)

            if best is None or candidate[0] < best[0]:
                best = candidate

        if best is None:
            return None

        _, index, m, start, end = best
        before = self.buffer[self._cursor:start]
        result = ExpectResult(
            status=ExpectStatus.MATCHED,
            index=index,
            match=m,
            before=before,
            matched=self.buffer[start:end],
        )
        self._cursor = end
        return result


    def expect(self, patterns: Union[PatternLike, Sequence[PatternLike]],
               timeout: Optional[float] = None) -> ExpectResult:
        """
        Wait until one of ``patterns`` matches the unconsumed output.

        Args:
            patterns: A pattern or a list of patterns. Strings are compiled as
                regular expressions; ``None`` or ``ANY`` is the catch-all.
            timeout: Seconds to wait, defaults to the engine timeout.

        Returns:
            ExpectResult with status MATCHED, TIMEOUT or EOF. On TIMEOUT and
            EOF the consumption cursor is not moved.
        """
        if isinstance(patterns, (list, tuple)):
            compiled = [compile_pattern(p) for p in patterns]
        else:
            compiled = [compile_pattern(patterns)]
        if not compiled:
            raise ValueError("expect requires at least one pattern")

        timeout = self.default_timeout if timeout is None else timeout
        start_time = time.monotonic()
        deadline = start_time + timeout
        self.state = EngineState.READING
        scanned = self._cursor

        while True:
            result = self._search(compiled, scanned)
            scanned = self._length
            if result is not None:
                result.elapsed = time.monotonic() - start_time
                self.state = EngineState.MATCHED
                self.last_result = result
                return result

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._finish(ExpectStatus.TIMEOUT, EngineState.TIMED_OUT, start_time)

            try:
                data = self.transport.read(remaining)
            except TransportEOF as e:
                logger.debug(f"EOF while expecting {compiled}: {e}")
                return self._finish(ExpectStatus.EOF, EngineState.EOF, start_time)

            if data:
                self._append(data)

    def _finish(self, status: ExpectStatus, state: EngineState, start_time: float) -> ExpectResult:
        self.state = state
        result = ExpectResult(
            status=status,
            last_buffer=self.unconsumed,
            elapsed=time.monotonic() - start_time,
        )
        self.last_result = result
        return result

    def close(self):
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
