from __future__ import annotations

import asyncio
import http.client
import math
import threading
import time
from typing import Iterator, Optional

import pytest

from core.config import RelayConfig, RetryPolicy
from core.errors import ConnectionNotPaired, DeliveryFailed, TransportError
from core.models import ConnectionRecord, ConnectionState
from core.relay import RelayEngine, RelayState, normalize_line, split_line


class FakeTransport:
    def __init__(self, failures: Optional[list[Optional[Exception]]] = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.attempts = 0
        self._failures = list(failures or [])

    async def send(self, chat_id: str, text: str) -> None:
        self.attempts += 1
        if self._failures:
            failure = self._failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append((chat_id, text))

    async def poll_for_message(self, credential: str):
        return None


class AlwaysFailingTransport(FakeTransport):
    async def send(self, chat_id: str, text: str) -> None:
        self.attempts += 1
        raise TransportError("network down")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _active_record() -> ConnectionRecord:
    return ConnectionRecord(
        name="build",
        credential="123:token",
        remote_chat_id="42",
        state=ConnectionState.ACTIVE,
    )


def _config(**overrides) -> RelayConfig:
    values = dict(max_lines=3, max_bytes=4096, max_age=None, min_send_interval=0)
    values.update(overrides)
    return RelayConfig(**values)


def _engine(transport, sleep=None, retry: Optional[RetryPolicy] = None, **overrides) -> RelayEngine:
    return RelayEngine(
        _active_record(),
        transport,
        _config(**overrides),
        retry or RetryPolicy(attempts=3, base_delay=0.5, max_delay=4.0, max_total_wait=30.0),
        sleep=sleep or RecordingSleep(),
    )


def test_sends_one_message_per_line_count_threshold() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=7)
    lines = [f"line {i}\n" for i in range(50)]

    report = asyncio.run(engine.run(lines))

    assert len(transport.sent) == math.ceil(50 / 7)
    texts = [text for _, text in transport.sent]
    assert "\n".join(texts).split("\n") == [f"line {i}" for i in range(50)]
    assert all(chat_id == "42" for chat_id, _ in transport.sent)
    assert report.lines_read == 50
    assert report.batches_sent == 8
    assert engine.state is RelayState.TERMINATED


def test_batches_keep_their_slice_of_lines() -> None:
    transport = FakeTransport()
    engine = _engine(transport)

    asyncio.run(engine.run(["a\n", "b\n", "c\n", "d\n", "e\n", "f\n", "g\n"]))

    assert [text for _, text in transport.sent] == ["a\nb\nc", "d\ne\nf", "g"]


def test_empty_input_sends_nothing() -> None:
    transport = FakeTransport()
    engine = _engine(transport)

    report = asyncio.run(engine.run([]))

    assert transport.sent == []
    assert report.batches_sent == 0
    assert engine.state is RelayState.TERMINATED


def test_pending_connection_is_rejected() -> None:
    record = ConnectionRecord(name="build", credential="123:token")
    with pytest.raises(ConnectionNotPaired):
        RelayEngine(record, FakeTransport(), _config(), RetryPolicy())


def test_transient_failure_is_retried_once_delivered() -> None:
    transport = FakeTransport(failures=[TransportError("timeout")])
    sleep = RecordingSleep()
    engine = _engine(transport, sleep=sleep)

    report = asyncio.run(engine.run(["one\n", "two\n"]))

    assert transport.sent == [("42", "one\ntwo")]
    assert transport.attempts == 2
    assert sleep.delays == [0.5]
    assert report.batches_sent == 1
    assert report.batches_failed == 0


def test_backoff_grows_and_honors_retry_after() -> None:
    transport = FakeTransport(
        failures=[
            TransportError("boom"),
            TransportError("boom"),
            TransportError("flood", status=429, retry_after=3.0),
        ]
    )
    sleep = RecordingSleep()
    retry = RetryPolicy(attempts=5, base_delay=0.5, max_delay=4.0, max_total_wait=30.0)
    engine = _engine(transport, sleep=sleep, retry=retry)

    asyncio.run(engine.run(["hello\n"]))

    assert sleep.delays == [0.5, 1.0, 3.0]
    assert transport.sent == [("42", "hello")]


def test_best_effort_continues_after_lost_batch() -> None:
    transport = FakeTransport(failures=[TransportError("down"), TransportError("down")])
    retry = RetryPolicy(attempts=2, base_delay=0.1, max_delay=1.0, max_total_wait=10.0)
    engine = _engine(transport, retry=retry, max_lines=2, mode="best_effort")

    report = asyncio.run(engine.run(["a\n", "b\n", "c\n", "d\n"]))

    assert transport.sent == [("42", "c\nd")]
    assert report.batches_failed == 1
    assert report.batches_sent == 1


def test_strict_mode_aborts_with_delivery_failed() -> None:
    transport = AlwaysFailingTransport()
    retry = RetryPolicy(attempts=2, base_delay=0.1, max_delay=1.0, max_total_wait=10.0)
    engine = _engine(transport, retry=retry, max_lines=2, mode="strict")

    with pytest.raises(DeliveryFailed) as excinfo:
        asyncio.run(engine.run(["a\n", "b\n", "c\n", "d\n", "e\n", "f\n"]))

    assert excinfo.value.batch_number == 1
    assert excinfo.value.attempts == 2
    assert transport.attempts == 2
    assert engine.report.batches_failed == 1
    assert engine.report.batches_sent == 0
    assert engine.state is RelayState.TERMINATED


def test_total_wait_budget_limits_retries() -> None:
    transport = AlwaysFailingTransport()
    sleep = RecordingSleep()
    retry = RetryPolicy(attempts=10, base_delay=2.0, max_delay=8.0, max_total_wait=7.0)
    engine = _engine(transport, sleep=sleep, retry=retry)

    report = asyncio.run(engine.run(["x\n"]))

    # 2 + 4 = 6s waited; the next 8s wait would exceed the budget.
    assert sleep.delays == [2.0, 4.0]
    assert report.batches_failed == 1


def test_byte_threshold_flushes_before_overflow() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=100, max_bytes=10)

    asyncio.run(engine.run(["abcd\n", "efgh\n", "ij\n"]))

    assert [text for _, text in transport.sent] == ["abcd\nefgh", "ij"]


def test_long_line_is_split_to_fit_message_size() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=100, max_bytes=10)

    asyncio.run(engine.run(["x" * 25 + "\n"]))

    assert [text for _, text in transport.sent] == ["x" * 10, "x" * 10, "x" * 5]


def test_age_threshold_flushes_partial_batch() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=100, max_age=0.05)

    def slow_lines() -> Iterator[str]:
        yield "first\n"
        time.sleep(0.3)
        yield "second\n"

    asyncio.run(engine.run(slow_lines()))

    assert [text for _, text in transport.sent] == ["first", "second"]


def test_stop_flushes_what_was_read() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=100)
    release = threading.Event()

    def blocking_lines() -> Iterator[str]:
        yield "one\n"
        yield "two\n"
        release.wait(5)
        yield "never relayed\n"

    async def scenario():
        task = asyncio.create_task(engine.run(blocking_lines()))
        await asyncio.sleep(0.1)
        engine.stop()
        return await task

    try:
        report = asyncio.run(scenario())
    finally:
        release.set()

    assert transport.sent == [("42", "one\ntwo")]
    assert report.lines_read == 2
    assert engine.state is RelayState.TERMINATED


def test_whitespace_only_batches_are_skipped() -> None:
    transport = FakeTransport()
    engine = _engine(transport, max_lines=2)

    report = asyncio.run(engine.run(["\n", "   \n", "real\n"]))

    assert transport.sent == [("42", "real")]
    assert report.skipped_empty == 1


def test_carriage_returns_keep_last_redraw() -> None:
    transport = FakeTransport()
    engine = _engine(transport)

    asyncio.run(engine.run(["10%\r20%\r30%\n", "done\r\n"]))

    assert transport.sent == [("42", "30%\ndone")]


def test_send_interval_spaces_consecutive_messages() -> None:
    transport = FakeTransport()
    sleep = RecordingSleep()
    now = [100.0]
    engine = RelayEngine(
        _active_record(),
        transport,
        _config(max_lines=1, min_send_interval=1.0),
        RetryPolicy(),
        clock=lambda: now[0],
        sleep=sleep,
    )

    asyncio.run(engine.run(["a\n", "b\n"]))

    assert len(transport.sent) == 2
    assert sleep.delays == [1.0]


def test_normalize_line() -> None:
    assert normalize_line("plain\n") == "plain"
    assert normalize_line("windows\r\n") == "windows"
    assert normalize_line("no newline") == "no newline"
    assert normalize_line("a\rb\rc\n") == "c"


def test_split_line_respects_multibyte_characters() -> None:
    chunks = split_line("é" * 5, 4)
    assert chunks == ["éé", "éé", "é"]
    assert all(len(chunk.encode("utf-8")) <= 4 for chunk in chunks)


class BrokenConnectionTransport(FakeTransport):
    """Fails with an error the retry loop does not know about."""

    async def send(self, chat_id: str, text: str) -> None:
        self.attempts += 1
        await asyncio.sleep(0.01)
        raise http.client.IncompleteRead(b"partial")


def test_unexpected_send_error_is_a_delivery_failure_not_a_hang() -> None:
    transport = BrokenConnectionTransport()
    engine = _engine(transport, max_lines=1, max_pending_batches=1)

    report = asyncio.run(asyncio.wait_for(engine.run([f"{i}\n" for i in range(10)]), 5))

    assert report.batches_failed == 10
    assert report.batches_sent == 0
    assert transport.attempts == 10
    assert engine.state is RelayState.TERMINATED


def test_unexpected_send_error_aborts_strict_relay() -> None:
    transport = BrokenConnectionTransport()
    engine = _engine(transport, max_lines=1, max_pending_batches=1, mode="strict")

    with pytest.raises(DeliveryFailed) as excinfo:
        asyncio.run(asyncio.wait_for(engine.run([f"{i}\n" for i in range(10)]), 5))

    assert isinstance(excinfo.value.__cause__, http.client.IncompleteRead)
    assert excinfo.value.batch_number == 1
    assert transport.attempts == 1
    assert engine.state is RelayState.TERMINATED
