import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from social.graze.paymail.model.trace import TraceEntry, TraceTarget

logger = logging.getLogger(__name__)


class TraceSink(Protocol):
    """Receives completed trace entries, in issue order."""

    def append(self, entry: TraceEntry) -> None:
        pass


class TraceSpan:
    def __init__(self, sequence: int, target: TraceTarget, request: str) -> None:
        self.sequence = sequence
        self.target = target
        self.request = request
        self.started_at = datetime.now(timezone.utc)
        self._started = time.perf_counter()
        self.duration: Optional[float] = None
        self.response: Optional[Any] = None
        self.status: Optional[int] = None
        self.error: Optional[str] = None

    def stop(self) -> None:
        if self.duration is None:
            self.duration = time.perf_counter() - self._started

    def to_entry(self) -> TraceEntry:
        return TraceEntry(
            sequence=self.sequence,
            target=self.target,
            request=self.request,
            response=self.response,
            status=self.status,
            error=self.error,
            started_at=self.started_at,
            duration=self.duration,
        )


class TraceCollector:
    """
    Append-only record of every DNS query and HTTPS round-trip of one resolution.

    Requests run concurrently, so sequence numbers are handed out when a request
    starts and completed entries are held back until every earlier entry has
    completed. Entries therefore reach `entries` and the optional sink in the
    order the requests were issued, regardless of the order they finish in.

    A disabled collector still hands out spans so callers don't branch on it,
    but nothing is recorded.
    """

    def __init__(self, sink: Optional[TraceSink] = None, enabled: bool = True) -> None:
        self._sink = sink
        self._enabled = enabled
        self._lock = asyncio.Lock()
        self._next_sequence = 0
        self._next_flush = 0
        self._pending: Dict[int, Optional[TraceEntry]] = {}
        self._entries: List[TraceEntry] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def entries(self) -> List[TraceEntry]:
        return list(self._entries)

    async def begin(self, target: TraceTarget, request: str) -> TraceSpan:
        async with self._lock:
            sequence = self._next_sequence
            self._next_sequence += 1
            if self._enabled:
                self._pending[sequence] = None
        return TraceSpan(sequence, target, request)

    async def finish(self, span: TraceSpan) -> None:
        span.stop()
        if not self._enabled:
            return
        async with self._lock:
            self._pending[span.sequence] = span.to_entry()
            self._flush_ready()

    async def close(self) -> None:
        """Flush entries whose predecessors never completed."""
        async with self._lock:
            for sequence in sorted(self._pending):
                entry = self._pending.pop(sequence)
                if entry is not None:
                    self._emit(entry)
            self._next_flush = self._next_sequence

    @contextlib.asynccontextmanager
    async def span(self, target: TraceTarget, request: str) -> AsyncIterator[TraceSpan]:
        span = await self.begin(target, request)
        try:
            yield span
        except BaseException as e:
            if span.error is None:
                span.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            await self.finish(span)

    def _flush_ready(self) -> None:
        while self._pending.get(self._next_flush) is not None:
            entry = self._pending.pop(self._next_flush)
            self._next_flush += 1
            if entry is not None:
                self._emit(entry)

    def _emit(self, entry: TraceEntry) -> None:
        self._entries.append(entry)
        if self._sink is None:
            return
        try:
            self._sink.append(entry)
        except Exception:
            # Sink failures never reach the resolution
            logger.exception("Trace sink rejected entry %d", entry.sequence)
