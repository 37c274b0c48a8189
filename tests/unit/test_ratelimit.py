from __future__ import annotations

import io
import threading
import time

import pytest

from upload_dispatcher.common.cancel import CancelToken
from upload_dispatcher.common.errors import OperationCancelled
from upload_dispatcher.transfer.ratelimit import RateLimitedReader, TokenBucket


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _drain(reader: RateLimitedReader, chunk_size: int) -> bytes:
    out = b""
    while True:
        chunk = reader.read(chunk_size)
        if not chunk:
            return out
        out += chunk


def test_bucket_starts_full_and_goes_into_debt() -> None:
    clock = _Clock()
    b = TokenBucket(rate=100, capacity=50, clock=clock)
    assert b.take(50) == 0.0
    assert b.take(50) == pytest.approx(0.5)

    clock.now = 1.0
    # долг 50 погашен, ещё 50 токенов, но не больше capacity
    assert b.take(50) == 0.0
    assert b.take(1) > 0


def test_bucket_refill_is_capped() -> None:
    clock = _Clock()
    b = TokenBucket(rate=1000, capacity=10, clock=clock)
    b.take(10)
    clock.now = 60.0
    assert b.take(10) == 0.0
    assert b.take(1) == pytest.approx(0.001)


def test_transfer_below_capacity_is_not_throttled() -> None:
    clock = _Clock()
    b = TokenBucket(rate=1, capacity=1000, clock=clock)
    assert [b.take(300) for _ in range(3)] == [0.0, 0.0, 0.0]

    reader = RateLimitedReader(io.BytesIO(b"z" * 900), TokenBucket(rate=1, capacity=1000))
    started = time.monotonic()
    assert _drain(reader, 100) == b"z" * 900
    assert time.monotonic() - started < 0.5


def test_disabled_bucket_never_waits() -> None:
    assert not TokenBucket(rate=0, capacity=100).enabled
    assert not TokenBucket(rate=100, capacity=0).enabled
    assert TokenBucket(rate=0, capacity=0).take(10**9) == 0.0


def test_reader_respects_rate() -> None:
    data = b"x" * 3000
    bucket = TokenBucket(rate=10_000, capacity=1000)
    reader = RateLimitedReader(io.BytesIO(data), bucket)

    started = time.monotonic()
    out = _drain(reader, 500)
    elapsed = time.monotonic() - started

    assert out == data
    assert reader.bytes_read == 3000
    # (3000 - 1000) / 10000 = 0.2s
    assert elapsed >= 0.15


def test_reader_wait_is_cancellable() -> None:
    token = CancelToken()
    bucket = TokenBucket(rate=1, capacity=1)
    reader = RateLimitedReader(io.BytesIO(b"x" * 100), bucket, cancel=token)
    token.cancel("pause")
    with pytest.raises(OperationCancelled) as exc:
        reader.read(10)
    assert exc.value.reason == "pause"


def test_reader_wait_cancelled_midway() -> None:
    token = CancelToken()
    bucket = TokenBucket(rate=1, capacity=1)
    reader = RateLimitedReader(io.BytesIO(b"x" * 100), bucket, cancel=token)
    threading.Timer(0.05, lambda: token.cancel("shutdown")).start()
    started = time.monotonic()
    with pytest.raises(OperationCancelled):
        reader.read(50)
    assert time.monotonic() - started < 5
