"""Tests for the per-unit isolation wrapper."""

from __future__ import annotations

import pytest

from video_clipper.core.isolation import SKIPPED, UnitStatus, run_isolated


@pytest.mark.asyncio
async def test_run_isolated_contains_failures():
    """Test one failing unit does not stop the others."""
    failed = []

    async def operation(n):
        if n == 2:
            raise RuntimeError("unit 2 broke")
        return n * 10

    async def on_failure(n, error):
        failed.append((n, str(error)))

    batch = await run_isolated([1, 2, 3], operation, on_failure=on_failure)

    assert batch.succeeded == 2
    assert batch.failed == 1
    assert batch.skipped == 0
    assert batch.total == 3
    assert batch.values() == [10, 30]
    assert failed == [(2, "unit 2 broke")]
    assert [o.status for o in batch.outcomes] == [UnitStatus.SUCCEEDED, UnitStatus.FAILED, UnitStatus.SUCCEEDED]
    assert batch.failures()[0].error == "unit 2 broke"


@pytest.mark.asyncio
async def test_run_isolated_counts_skips():
    """Test the SKIPPED sentinel is counted separately."""
    async def operation(n):
        return SKIPPED if n % 2 else n

    batch = await run_isolated(range(4), operation)

    assert batch.succeeded == 2
    assert batch.skipped == 2
    assert batch.values() == [0, 2]


@pytest.mark.asyncio
async def test_run_isolated_failure_callback_errors_are_recorded():
    """Test an error while recording a failure is noted, not raised."""
    async def operation(n):
        raise ValueError("bad input")

    async def on_failure(n, error):
        raise OSError("store offline")

    batch = await run_isolated(["a"], operation, on_failure=on_failure, label="clip")

    assert batch.failed == 1
    assert "bad input" in batch.outcomes[0].error
    assert "store offline" in batch.outcomes[0].error


@pytest.mark.asyncio
async def test_run_isolated_preserves_order():
    """Test units run sequentially in input order."""
    seen = []

    async def operation(n):
        seen.append(n)
        return n

    await run_isolated([3, 1, 2], operation)

    assert seen == [3, 1, 2]


@pytest.mark.asyncio
async def test_run_isolated_empty():
    """Test an empty batch succeeds with zero counts."""
    async def operation(n):
        return n

    batch = await run_isolated([], operation)

    assert batch.total == 0
    assert batch.outcomes == []
