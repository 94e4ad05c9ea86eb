"""Relay engine (core domain).

The engine turns a lazy stream of text lines into batched chat messages:

1) A daemon reader thread pumps lines into a bounded queue
2) The batching coroutine normalizes lines and grows the current batch
3) A batch is flushed on line count, byte size, age, end of input or stop
4) One sender task delivers batches strictly in order, with retry/backoff

Only the current batch and the bounded queues are held in memory, so the
input can be arbitrarily long.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional

from core.config import RelayConfig, RetryPolicy
from core.errors import ConnectionNotPaired, DeliveryFailed, TransportError
from core.models import ConnectionRecord, RelayBatch, RelayReport
from core.ports import TransportPort

LOGGER = logging.getLogger(__name__)

_EOF = object()
_TIMEOUT = object()


class RelayState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    TERMINATED = "terminated"


def normalize_line(raw: str) -> str:
    """Strip the line ending and collapse carriage-return overwrites.

    Progress bars redraw a line with ``\\r``; only the text after the last
    carriage return is what a terminal would show.
    """

    line = raw[:-1] if raw.endswith("\n") else raw
    if line.endswith("\r"):
        line = line[:-1]
    if "\r" in line:
        line = line.rsplit("\r", 1)[1]
    return line


def split_line(line: str, max_bytes: int) -> List[str]:
    """Split ``line`` into chunks whose UTF-8 size fits in ``max_bytes``."""

    if len(line.encode("utf-8")) <= max_bytes:
        return [line]

    chunks: List[str] = []
    current: List[str] = []
    size = 0
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > max_bytes:
            chunks.append("".join(current))
            current, size = [], 0
        current.append(char)
        size += width
    if current:
        chunks.append("".join(current))
    return chunks


class RelayEngine:
    """Reads lines, batches them and delivers batches to one paired chat."""

    def __init__(
        self,
        record: ConnectionRecord,
        transport: TransportPort,
        config: RelayConfig,
        retry: RetryPolicy,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not record.is_active:
            raise ConnectionNotPaired(
                f"connection {record.name!r} is not paired yet; run 'teleecho pair {record.name}'"
            )
        self._record = record
        self._chat_id = str(record.remote_chat_id)
        self._transport = transport
        self._config = config
        self._retry = retry
        self._clock = clock
        self._sleep = sleep

        self.state = RelayState.IDLE
        self.report = RelayReport()
        self._stop = asyncio.Event()
        self._failure: Optional[DeliveryFailed] = None
        self._sender: Optional[asyncio.Task] = None
        self._batch_number = 0
        self._last_send_at: Optional[float] = None

    def stop(self) -> None:
        """Stop reading; queued lines are still flushed and delivered."""

        if not self._stop.is_set():
            LOGGER.info("Stop requested for relay on %s", self._record.name)
        self._stop.set()

    async def run(self, lines: Iterable[str]) -> RelayReport:
        """Relay ``lines`` until they end or ``stop()`` is called.

        In strict mode the first undeliverable batch ends the run and its
        DeliveryFailed is raised after the remaining work is accounted for.
        """

        loop = asyncio.get_running_loop()
        line_queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.queue_lines)
        batch_queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.max_pending_batches)
        closing = threading.Event()

        reader = threading.Thread(
            target=self._pump,
            args=(lines, loop, line_queue, closing),
            name="teleecho-reader",
            daemon=True,
        )
        self._sender = asyncio.create_task(self._send_loop(batch_queue))
        reader.start()

        batch = RelayBatch()
        while True:
            item = await self._next_line(line_queue, batch)
            if item is _TIMEOUT:
                await self._flush(batch, batch_queue)
                continue
            if item is _EOF:
                break
            await self._add_line(item, batch, batch_queue)

        closing.set()
        if self._stop.is_set() and self._failure is None:
            await self._drain(line_queue, batch, batch_queue)

        # Final flush happens whatever the failure state; it is accounted
        # as abandoned when a strict failure already stopped delivery.
        await self._flush(batch, batch_queue)
        await self._enqueue(batch_queue, _EOF)
        await self._sender
        self.state = RelayState.TERMINATED

        LOGGER.info(
            "Relay finished: lines=%s, sent=%s, failed=%s, abandoned=%s",
            self.report.lines_read,
            self.report.batches_sent,
            self.report.batches_failed,
            self.report.batches_abandoned,
        )
        if self._failure is not None:
            raise self._failure
        return self.report

    def _pump(
        self,
        lines: Iterable[str],
        loop: asyncio.AbstractEventLoop,
        line_queue: asyncio.Queue,
        closing: threading.Event,
    ) -> None:
        # Runs in the reader thread; blocking on a full queue is the backpressure.
        try:
            for line in lines:
                if closing.is_set():
                    return
                asyncio.run_coroutine_threadsafe(line_queue.put(line), loop).result()
        except Exception:
            if not closing.is_set():
                LOGGER.exception("Reading input failed; treating it as end of input")
        if not closing.is_set():
            try:
                asyncio.run_coroutine_threadsafe(line_queue.put(_EOF), loop)
            except RuntimeError:
                # The loop closed while the last line was being read.
                return

    async def _next_line(self, line_queue: asyncio.Queue, batch: RelayBatch) -> object:
        if self._stop.is_set():
            return _EOF

        timeout = None
        if batch and self._config.max_age is not None:
            timeout = max(0.0, self._config.max_age - batch.age(self._clock()))

        getter = asyncio.ensure_future(line_queue.get())
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {getter, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (getter, stopper):
                if not waiter.done():
                    waiter.cancel()

        if getter in done:
            return getter.result()
        if stopper in done:
            return _EOF
        return _TIMEOUT

    async def _drain(
        self, line_queue: asyncio.Queue, batch: RelayBatch, batch_queue: asyncio.Queue
    ) -> None:
        while True:
            try:
                item = line_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if item is _EOF:
                return
            await self._add_line(item, batch, batch_queue)

    async def _add_line(self, raw: str, batch: RelayBatch, batch_queue: asyncio.Queue) -> None:
        self.report.lines_read += 1
        for piece in split_line(normalize_line(raw), self._config.max_bytes):
            if batch and batch.size_with(piece) > self._config.max_bytes:
                await self._flush(batch, batch_queue)
            batch.add(piece, self._clock())
            self.state = RelayState.ACCUMULATING
            if len(batch) >= self._config.max_lines or batch.size_bytes >= self._config.max_bytes:
                await self._flush(batch, batch_queue)

    async def _flush(self, batch: RelayBatch, batch_queue: asyncio.Queue) -> None:
        if not batch:
            return
        self.state = RelayState.FLUSHING
        line_count = len(batch)
        text = batch.text()
        batch.clear()

        if not text.strip():
            self.report.skipped_empty += 1
        elif self._failure is not None:
            self.report.batches_abandoned += 1
        else:
            self._batch_number += 1
            await self._enqueue(batch_queue, (self._batch_number, line_count, text))
        self.state = RelayState.ACCUMULATING

    async def _send_loop(self, batch_queue: asyncio.Queue) -> None:
        while True:
            item = await batch_queue.get()
            if item is _EOF:
                return
            if self._failure is not None:
                self.report.batches_abandoned += 1
                continue

            number, line_count, text = item
            try:
                await self._deliver(number, line_count, text)
            except DeliveryFailed as exc:
                self._record_failure(exc)
            except Exception as exc:
                # Anything outside TransportError is not retryable; the batch is lost.
                LOGGER.exception("Unexpected error while sending batch %s", number)
                failure = DeliveryFailed(
                    f"batch {number} ({line_count} lines) could not be delivered: {exc!r}",
                    batch_number=number,
                    attempts=1,
                )
                failure.__cause__ = exc
                self._record_failure(failure)

    def _record_failure(self, exc: DeliveryFailed) -> None:
        self.report.batches_failed += 1
        LOGGER.error("%s", exc)
        if self._config.strict:
            self._failure = exc
            self._stop.set()

    async def _enqueue(self, batch_queue: asyncio.Queue, item: object) -> None:
        """Queue ``item`` for the sender, failing instead of blocking if the sender died."""

        assert self._sender is not None
        put = asyncio.ensure_future(batch_queue.put(item))
        done, _ = await asyncio.wait({put, self._sender}, return_when=asyncio.FIRST_COMPLETED)
        if put in done:
            return
        put.cancel()
        # The sender only returns after _EOF, so reaching here means it crashed.
        self._sender.result()
        raise RuntimeError("relay sender stopped before the input was fully queued")

    async def _deliver(self, number: int, line_count: int, text: str) -> None:
        attempt = 0
        waited = 0.0
        while True:
            attempt += 1
            await self._respect_send_interval()
            try:
                await self._transport.send(self._chat_id, text)
            except TransportError as exc:
                self._last_send_at = self._clock()
                delay = self._retry.delay_for(attempt, exc.retry_after)
                if attempt >= self._retry.attempts or waited + delay > self._retry.max_total_wait:
                    raise DeliveryFailed(
                        f"batch {number} ({line_count} lines) could not be delivered "
                        f"after {attempt} attempts: {exc}",
                        batch_number=number,
                        attempts=attempt,
                    ) from exc
                LOGGER.warning(
                    "Sending batch %s failed (attempt %s/%s): %s; retrying in %.1fs",
                    number,
                    attempt,
                    self._retry.attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                waited += delay
            else:
                self._last_send_at = self._clock()
                self.report.batches_sent += 1
                LOGGER.debug("Batch %s delivered (%s lines)", number, line_count)
                return

    async def _respect_send_interval(self) -> None:
        if self._last_send_at is None or self._config.min_send_interval <= 0:
            return
        wait = self._last_send_at + self._config.min_send_interval - self._clock()
        if wait > 0:
            await self._sleep(wait)
