import asyncio
import time
import sys
from pathlib import Path

import pytest

# Ensure src/ is importable
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from rate_limit import TokenBucket, build_rate_limiter


@pytest.mark.asyncio
async def test_tokens_refill_over_time():
    bucket = TokenBucket(capacity=5, refill_per_sec=10)
    # Drain the bucket completely
    for _ in range(5):
        await bucket.acquire()

    await asyncio.sleep(0.3)

    # Trigger token recalculation without consuming
    await bucket.acquire(0)

    assert bucket.tokens == pytest.approx(3, abs=0.3)


@pytest.mark.asyncio
async def test_acquire_waits_for_refill():
    bucket = TokenBucket(capacity=1, refill_per_sec=5)
    await bucket.acquire()

    start = time.monotonic()
    await bucket.acquire()
    elapsed = time.monotonic() - start

    assert elapsed >= 0.18
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_weight_above_capacity_is_rejected():
    bucket = TokenBucket(capacity=2, refill_per_sec=1)
    with pytest.raises(ValueError):
        await bucket.acquire(3)


def test_builder_reads_environment(monkeypatch):
    monkeypatch.setenv("GRID_RATE_LIMIT_RPS", "4")
    monkeypatch.delenv("GRID_RATE_LIMIT_BURST", raising=False)
    bucket = build_rate_limiter()
    assert bucket.refill_per_sec == 4
    assert bucket.capacity == 8

    monkeypatch.setenv("GRID_RATE_LIMIT_BURST", "20")
    assert build_rate_limiter().capacity == 20
