"""Incremental record loading with at most one fetch in flight.

A :class:`StreamingProvider` owns one streaming session: the records
loaded so far, a cursor for the next fetch, and a status that is
``idle``, ``loading`` or ``complete``.  Consumers call
:meth:`StreamingProvider.load_more` when the viewport nears the end of
the buffer and :meth:`StreamingProvider.subscribe` to hear about new
batches.

Typical usage::

    provider = StreamingProvider(lazyframe_source(scan_file(path)), batch_size=500)
    unsubscribe = provider.subscribe(lambda batch: print(len(batch)))
    await provider.load_more()
"""

import asyncio
import enum
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import polars as pl

from reflex_treegrid.models import Record

_DEFAULT_BATCH_SIZE: int = 200


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Batch:
    """One page returned by a fetch.

    ``cursor`` is where the next fetch starts; ``None`` means "advance
    by the number of records".  ``done`` marks the last page.
    """

    records: Sequence[Record]
    cursor: Any = None
    done: bool = False


Fetch = Callable[[Any, int], Awaitable["Batch | Sequence[Record]"]]
Subscriber = Callable[[Sequence[Record]], Any]


class StreamingProvider:
    """Pull-based loader that appends batches to a buffer.

    Args:
        fetch: ``async fetch(cursor, size)`` returning a :class:`Batch`
            or a plain sequence of records.
        batch_size: Records requested per fetch.  A shorter batch ends
            the session.
        initial_cursor: Cursor for the first fetch and after
            :meth:`reset`.
    """

    def __init__(
        self,
        fetch: Fetch,
        *,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        initial_cursor: Any = 0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._fetch = fetch
        self._batch_size = batch_size
        self._initial_cursor = initial_cursor
        self._cursor: Any = initial_cursor
        self._buffer: list[Record] = []
        self._status = SessionStatus.IDLE
        self._epoch = 0
        self._subscribers: list[Subscriber] = []

    # -- session state ------------------------------------------------------

    @property
    def buffer(self) -> tuple[Record, ...]:
        return tuple(self._buffer)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_loading(self) -> bool:
        return self._status is SessionStatus.LOADING

    @property
    def has_more(self) -> bool:
        return self._status is not SessionStatus.COMPLETE

    @property
    def cursor(self) -> Any:
        return self._cursor

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def __len__(self) -> int:
        return len(self._buffer)

    # -- subscriptions ------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every new non-empty batch.

        Earlier batches are not replayed.  Returns a function that
        removes the subscription; calling it twice is harmless.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, records: Sequence[Record]) -> None:
        for callback in list(self._subscribers):
            callback(records)

    # -- loading ------------------------------------------------------------

    def reset(self) -> None:
        """Start a new session; a load still in flight is discarded."""
        self._epoch += 1
        self._buffer = []
        self._cursor = self._initial_cursor
        self._status = SessionStatus.IDLE

    async def load_more(self) -> bool:
        """Fetch and append the next batch.

        Does nothing while a load is in flight or after the last batch.

        Returns:
            ``True`` when a batch was appended to this session.

        Raises:
            Exception: Whatever the fetch raised; the session is back to
                ``idle`` so the load can be retried.
            asyncio.CancelledError: The awaiting task was cancelled; the
                session is likewise back to ``idle``.
        """
        if self._status is not SessionStatus.IDLE:
            return False
        # No await between the check above and this flip.
        self._status = SessionStatus.LOADING
        epoch = self._epoch
        cursor = self._cursor

        start = time.perf_counter()
        try:
            result = await self._fetch(cursor, self._batch_size)
        except Exception as exc:
            if epoch == self._epoch:
                self._status = SessionStatus.IDLE
            print(f"[StreamingProvider] Fetch at cursor {cursor!r} failed: {exc}")
            raise
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._status = SessionStatus.IDLE
            print(f"[StreamingProvider] Fetch at cursor {cursor!r} cancelled")
            raise

        if epoch != self._epoch:
            print(f"[StreamingProvider] Discarding stale batch from epoch {epoch} (now {self._epoch})")
            return False

        if isinstance(result, Batch):
            records, next_cursor, done = list(result.records), result.cursor, result.done
        else:
            records, next_cursor, done = list(result), None, False
        if next_cursor is None:
            next_cursor = cursor + len(records)

        self._buffer.extend(records)
        self._cursor = next_cursor
        finished = done or len(records) < self._batch_size
        self._status = SessionStatus.COMPLETE if finished else SessionStatus.IDLE

        elapsed = time.perf_counter() - start
        print(
            f"[StreamingProvider] Loaded {len(records)} records in {elapsed:.3f}s "
            f"(buffer={len(self._buffer)}, status={self._status.value})"
        )
        if records:
            self._notify(records)
        return True

    async def load_all(self) -> tuple[Record, ...]:
        """Load batches until the session is complete."""
        while self._status is SessionStatus.IDLE:
            await self.load_more()
        return self.buffer


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------

def sequence_source(records: Sequence[Record], *, delay: float = 0.0) -> Fetch:
    """Serve an in-memory sequence in pages, optionally after *delay* seconds."""

    async def fetch(cursor: int, size: int) -> Batch:
        if delay:
            await asyncio.sleep(delay)
        page = list(records[cursor : cursor + size])
        return Batch(page, cursor=cursor + len(page), done=cursor + len(page) >= len(records))

    return fetch


def lazyframe_source(lf: pl.LazyFrame) -> Fetch:
    """Serve row slices of a LazyFrame; each slice is collected off the event loop."""

    async def fetch(cursor: int, size: int) -> Batch:
        df = await asyncio.to_thread(lf.slice(cursor, size).collect)
        return Batch(df.to_dicts(), cursor=cursor + df.height, done=df.height < size)

    return fetch
