"""Tests for the bounded worker pool."""

from __future__ import annotations

import asyncio
import time

import pytest

from attendx.config import Settings
from attendx.errors import OperationTimeout
from attendx.workers import WorkerPool


def _pool(**overrides: object) -> WorkerPool:
    return WorkerPool(Settings(**overrides))  # type: ignore[arg-type]


class TestWorkerPool:
    async def test_run_returns_result(self) -> None:
        pool = _pool()
        try:
            assert await pool.run(sum, [1, 2, 3]) == 6
            assert pool.active_count == 0
            assert pool.queue_depth == 0
        finally:
            pool.shutdown()

    async def test_exceptions_propagate(self) -> None:
        pool = _pool()

        def boom() -> None:
            raise KeyError("nope")

        try:
            with pytest.raises(KeyError):
                await pool.run(boom)
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_slow_call_times_out(self) -> None:
        pool = _pool()
        try:
            with pytest.raises(OperationTimeout) as exc_info:
                await pool.run(time.sleep, 0.5, timeout=0.05)
            assert exc_info.value.kind == "timeout"
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_default_timeout_from_settings(self) -> None:
        pool = _pool(operation_timeout=0.05)
        try:
            with pytest.raises(OperationTimeout):
                await pool.run(time.sleep, 0.5)
        finally:
            pool.shutdown()

    async def test_waiting_for_slot_counts_against_timeout(self) -> None:
        pool = _pool(max_concurrent=1)
        try:
            blocker = asyncio.create_task(pool.run(time.sleep, 0.3, timeout=1.0))
            await asyncio.sleep(0.05)
            assert pool.active_count == 1
            with pytest.raises(OperationTimeout):
                await pool.run(sum, [1], timeout=0.05)
            await blocker
            assert pool.queue_depth == 0
        finally:
            pool.shutdown()
