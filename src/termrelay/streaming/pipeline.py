"""Output streaming pipeline.

Turns the raw byte bursts of one shell process into ordered,
sequence-numbered output chunks, and fans them out to any number of
subscribers plus the durable store.

Batching: a batch is flushed when the stream has no further data
immediately available, when it reaches ``max_batch_bytes``, or when
its oldest byte is ``flush_interval`` seconds old, whichever comes
first.

Backpressure: the reader is never blocked. Chunks stay in a bounded
in-memory window and are handed to the store; a subscriber whose queue
overflows drops its queue and resynchronizes from the window (or the
store, for anything already evicted) on its next read.

Redaction: every chunk is filtered against the tail of the text already
released, and an unterminated line is held back for up to
``redaction_hold`` seconds of quiet, so a secret that arrives one
keystroke echo at a time is still replaced before it leaves.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import time
from collections import deque
from collections.abc import Callable

from termrelay.domain.errors import PersistenceError
from termrelay.domain.models import ChunkKind, OutputChunk
from termrelay.security.filter import SecurityFilter
from termrelay.shell.base import ShellOutputStream
from termrelay.storage.base import SessionStore

logger = logging.getLogger(__name__)

# Raw text kept after release so a secret split across chunks still matches
_CONTEXT_CHARS = 256

_CLOSED = object()
_RESYNC = object()


class Subscription:
    """A restartable-from-sequence view of a pipeline's output.

    Yields every chunk with a sequence greater than the one it was
    created with, in order, with no gaps and no duplicates.
    """

    def __init__(self, pipeline: OutputPipeline, after_sequence: int, queue_size: int) -> None:
        self._pipeline = pipeline
        self._last = after_sequence
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max(queue_size, 1) + 1)
        self._queue_size = max(queue_size, 1)
        self._backlog: deque[OutputChunk] = deque()
        self._needs_replay = after_sequence < pipeline.last_sequence
        self._closed = False
        self.overflows = 0

    @property
    def session_id(self) -> str:
        return self._pipeline.session_id

    @property
    def last_sequence(self) -> int:
        """Sequence of the last chunk handed to the consumer."""
        return self._last

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, chunk: OutputChunk) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._queue_size:
            # Consumer is too slow: forget the queue, replay on next read
            self.overflows += 1
            self._drain_queue()
            self._queue.put_nowait(_RESYNC)
            logger.debug(
                "Subscriber on %s overflowed at sequence %d, will resync",
                self.session_id, chunk.sequence,
            )
            return
        self._queue.put_nowait(chunk)

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def _finish(self) -> None:
        """Stop accepting chunks; already-queued chunks are still delivered."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._drain_queue()
            self._needs_replay = True
        self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Unsubscribe. Iteration ends immediately."""
        self._pipeline._subscribers.discard(self)
        self._drain_queue()
        self._backlog.clear()
        self._needs_replay = False
        self._finish()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> OutputChunk:
        while True:
            if self._backlog:
                chunk = self._backlog.popleft()
                if chunk.sequence > self._last:
                    self._last = chunk.sequence
                    return chunk
                continue
            if self._needs_replay:
                self._needs_replay = False
                self._backlog.extend(await self._pipeline.replay(self._last))
                continue
            if self._closed and self._queue.empty():
                raise StopAsyncIteration
            item = await self._queue.get()
            if item is _CLOSED:
                raise StopAsyncIteration
            if item is _RESYNC:
                self._needs_replay = True
                continue
            assert isinstance(item, OutputChunk)
            if item.sequence <= self._last:
                continue
            if item.sequence > self._last + 1:
                # Emitted while we were replaying; the window has the gap
                self._needs_replay = True
                continue
            self._last = item.sequence
            return item


class OutputPipeline:
    """Batches, numbers, filters and distributes one session's output.

    The pipeline outlives individual shell processes: after a recovery
    the orchestrator calls ``run()`` again with the new process stream
    and sequence numbers continue where they left off.
    """

    def __init__(
        self,
        session_id: str,
        security_filter: SecurityFilter | None = None,
        store: SessionStore | None = None,
        flush_interval: float = 0.016,
        max_batch_bytes: int = 16384,
        window_size: int = 1024,
        subscriber_queue_size: int = 256,
        persist_batch_size: int = 64,
        redaction_hold: float = 0.1,
        max_hold_chars: int = 4096,
        start_sequence: int = 0,
        on_chunk: Callable[[OutputChunk], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self._filter = security_filter
        self._store = store
        self._flush_interval = flush_interval
        self._max_batch_bytes = max_batch_bytes
        self._subscriber_queue_size = subscriber_queue_size
        self._persist_batch_size = persist_batch_size
        self._redaction_hold = redaction_hold
        self._max_hold_chars = max_hold_chars
        self._sequence = start_sequence
        self._on_chunk = on_chunk

        self._window: deque[OutputChunk] = deque(maxlen=window_size)
        self._pending = bytearray()
        self._pending_since: float | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # Decoded text not yet filtered, and the raw tail of what went out
        self._held = ""
        self._held_since: float | None = None
        self._released_tail = ""
        self._subscribers: set[Subscription] = set()
        self._persist_queue: asyncio.Queue[OutputChunk] = asyncio.Queue()
        self._persist_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def last_sequence(self) -> int:
        return self._sequence

    @property
    def window_start(self) -> int:
        """Lowest sequence still held in memory."""
        return self._window[0].sequence if self._window else self._sequence + 1

    @property
    def last_kind(self) -> ChunkKind | None:
        """Kind of the most recently emitted chunk."""
        return self._window[-1].kind if self._window else None

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    @property
    def held_text(self) -> str:
        """Decoded output held back because it could still become a secret."""
        return self._held

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, raw: bytes) -> list[OutputChunk]:
        """Consume one raw chunk from the shell.

        Returns the chunks emitted as a result (only when the size
        threshold was crossed; time and quiescence flushes happen in
        ``run()`` or via ``flush()``).
        """
        if not raw or self._closed:
            return []
        if not self._pending:
            self._pending_since = time.monotonic()
        self._pending += raw
        if len(self._pending) >= self._max_batch_bytes:
            chunk = self.flush()
            return [chunk] if chunk is not None else []
        return []

    def batch_age(self) -> float:
        if self._pending_since is None:
            return 0.0
        return time.monotonic() - self._pending_since

    def flush(self, final: bool = False, release: bool = False) -> OutputChunk | None:
        """Emit pending bytes as one chunk.

        An incomplete UTF-8 sequence at the end stays in the decoder
        until the next flush (or ``final``). With a security filter, the
        unterminated tail that could still grow into a secret is held
        back until a line break arrives, it has been quiet for
        ``redaction_hold`` seconds, it exceeds ``max_hold_chars``, or
        ``release``/``final`` is set.
        """
        raw = bytes(self._pending)
        self._pending.clear()
        self._pending_since = None
        text = self._decoder.decode(raw, final=final)
        if self._filter is None or not self._filter.enabled:
            return self._emit(ChunkKind.OUTPUT, text, False) if text else None

        if self._held_since is not None and self.hold_remaining() == 0:
            release = True
        text = self._held + text
        cut = len(text)
        if not (final or release or self._redaction_hold <= 0):
            cut = self._filter.hold_from(text)
            if len(text) - cut > self._max_hold_chars:
                cut = len(text)
        grew = len(text) > len(self._held)
        text, self._held = text[:cut], text[cut:]
        if not self._held:
            self._held_since = None
        elif grew or self._held_since is None:
            self._held_since = time.monotonic()
        if not text:
            return None

        filtered, redacted = self._filter.filter_continuation(self._released_tail, text)
        self._released_tail = (self._released_tail + text)[-_CONTEXT_CHARS:]
        return self._emit(ChunkKind.OUTPUT, filtered, redacted)

    def hold_remaining(self) -> float | None:
        """Seconds until held output is released; None when nothing is held."""
        if self._held_since is None:
            return None
        return max(self._redaction_hold - (time.monotonic() - self._held_since), 0.0)

    def mark(self, kind: ChunkKind) -> OutputChunk:
        """Emit a liveness marker in the session's total order."""
        return self._emit(kind, "", False)

    def _emit(self, kind: ChunkKind, data: str, redacted: bool) -> OutputChunk:
        self._sequence += 1
        chunk = OutputChunk(
            session_id=self.session_id,
            sequence=self._sequence,
            data=data,
            kind=kind,
            redacted=redacted,
        )
        self._window.append(chunk)
        self._persist(chunk)
        for subscriber in list(self._subscribers):
            subscriber._offer(chunk)
        if self._on_chunk is not None:
            try:
                self._on_chunk(chunk)
            except Exception:
                logger.exception("Error in chunk callback for session %s", self.session_id)
        return chunk

    async def run(self, stream: ShellOutputStream) -> None:
        """Ingest loop for one process stream.

        Returns after the stream ends, having emitted a
        ``process_ended`` marker. Cancellation skips the marker.
        """
        self._decoder.reset()
        self._released_tail = ""
        logger.debug("Ingest loop started for session %s", self.session_id)
        while True:
            timeout = self.hold_remaining()
            try:
                raw = await asyncio.wait_for(anext(stream), timeout)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                self.flush(release=True)
                continue
            self.ingest(raw)
            if not stream.has_pending or self.batch_age() >= self._flush_interval:
                self.flush()
        self.flush(final=True)
        if not self._closed:
            self.mark(ChunkKind.PROCESS_ENDED)
        logger.debug("Ingest loop ended for session %s", self.session_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def subscribe(self, after_sequence: int | None = None) -> Subscription:
        """Subscribe to chunks with sequence greater than ``after_sequence``.

        ``None`` means "from now on".
        """
        after = self._sequence if after_sequence is None else after_sequence
        if after > self._sequence:
            logger.warning(
                "Subscriber on %s asked for sequence %d beyond last emitted %d",
                self.session_id, after, self._sequence,
            )
            after = self._sequence
        subscription = Subscription(self, max(after, 0), self._subscriber_queue_size)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.add(subscription)
        return subscription

    async def replay(self, after_sequence: int) -> list[OutputChunk]:
        """All retained chunks with sequence greater than ``after_sequence``.

        Served from the in-memory window; anything already evicted is
        read back from the store.
        """
        window = list(self._window)
        if not window or window[0].sequence <= after_sequence + 1 or self._store is None:
            return [c for c in window if c.sequence > after_sequence]

        stored: list[OutputChunk] = []
        await self.drain_persistence()
        try:
            stored = await self._store.load_output_since(self.session_id, after_sequence)
        except PersistenceError as e:
            logger.warning("Replay for %s degraded, store unavailable: %s", self.session_id, e)

        window = list(self._window)
        first_in_window = window[0].sequence if window else self._sequence + 1
        replayed = [c for c in stored if c.sequence < first_in_window]
        if replayed and replayed[0].sequence != after_sequence + 1:
            logger.warning(
                "Replay for %s starts at %d, expected %d",
                self.session_id, replayed[0].sequence, after_sequence + 1,
            )
        replayed.extend(c for c in window if c.sequence > after_sequence)
        return replayed

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, chunk: OutputChunk) -> None:
        if self._store is None:
            return
        self._persist_queue.put_nowait(chunk)
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.get_running_loop().create_task(
                self._persist_loop(), name=f"persist-{self.session_id[:8]}"
            )

    async def _persist_loop(self) -> None:
        assert self._store is not None
        while True:
            batch = [await self._persist_queue.get()]
            while len(batch) < self._persist_batch_size:
                try:
                    batch.append(self._persist_queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._store.save_output_batch(
                    self.session_id, (batch[0].sequence, batch[-1].sequence), batch
                )
            except PersistenceError as e:
                logger.warning(
                    "Could not persist output %d-%d for %s: %s",
                    batch[0].sequence, batch[-1].sequence, self.session_id, e,
                )
            except Exception:
                logger.exception("Unexpected store failure for session %s", self.session_id)
            finally:
                for _ in batch:
                    self._persist_queue.task_done()

    async def drain_persistence(self) -> None:
        """Wait until every emitted chunk has been handed to the store."""
        if self._persist_task is not None and not self._persist_task.done():
            await self._persist_queue.join()

    async def close(self, timeout: float = 2.0) -> None:
        """End all subscriptions and flush what remains to the store."""
        if self._closed:
            return
        self._closed = True
        for subscriber in list(self._subscribers):
            subscriber._finish()
        self._subscribers.clear()
        if self._persist_task is not None:
            try:
                await asyncio.wait_for(self.drain_persistence(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out persisting final output for %s", self.session_id)
            self._persist_task.cancel()
            try:
                await self._persist_task
            except asyncio.CancelledError:
                pass
            self._persist_task = None
        logger.debug("Pipeline closed for session %s", self.session_id)
