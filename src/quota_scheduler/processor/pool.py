# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Concurrent dispatch of many units of work through one RequestProcessor.
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..exceptions import ConfigurationError
from ..types.result import ProcessedResult
from .processor import RequestProcessor

logger = logging.getLogger(__name__)

# Cooldown sleeps are chunked so a shortened cooldown is noticed promptly.
MAX_COOLDOWN_SLEEP_MS = 2000


@dataclass(frozen=True)
class UnitOutcome:
    """Result or error of one payload, in submission order."""

    index: int
    result: ProcessedResult | None
    error: BaseException | None
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.error is None


class WorkerPool:
    """
    Runs payloads concurrently with a bounded number of workers.

    Before each dispatch the pool consults the processor's throttle hint; a
    positive hint extends a cooldown shared by every worker in the pool.
    A failing payload is reported in its UnitOutcome and never cancels the
    rest of the batch.
    """

    def __init__(self, processor: RequestProcessor, size: int | None = None) -> None:
        self.processor = processor
        self.size = size or processor.config.worker_pool_size
        if self.size < 1:
            raise ConfigurationError("size must be at least 1")
        self._backpressure_until = 0.0

    @property
    def worker_ids(self) -> list[str]:
        return [f"worker-{n}" for n in range(self.size)]

    async def run(self, payloads: Iterable[Any]) -> list[UnitOutcome]:
        """
        Process every payload and return outcomes in submission order.

        Cancellation of ``run`` cancels all in-flight units.
        """
        # A unit checks out a worker id for its whole run, so no two in-flight
        # units ever share one.
        free: asyncio.Queue[str] = asyncio.Queue()
        for worker_id in self.worker_ids:
            free.put_nowait(worker_id)

        async def _run_one(index: int, payload: Any) -> UnitOutcome:
            worker_id = await free.get()
            try:
                await self._apply_backpressure(index)
                started = time.monotonic()
                try:
                    result = await self.processor.submit_unit(payload, worker_id=worker_id)
                except Exception as e:
                    logger.warning(f"Unit {index} failed on {worker_id}: {type(e).__name__}: {e}")
                    return UnitOutcome(index, None, e, _elapsed_ms(started))
                return UnitOutcome(index, result, None, _elapsed_ms(started))
            finally:
                free.put_nowait(worker_id)

        tasks = [
            asyncio.create_task(_run_one(index, payload))
            for index, payload in enumerate(payloads)
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _apply_backpressure(self, index: int) -> None:
        delay_ms = self.processor.get_throttle_delay_ms()
        if delay_ms > 0:
            proposed = time.monotonic() + delay_ms / 1000
            if proposed > self._backpressure_until:
                self._backpressure_until = proposed
                logger.warning(f"Backpressure triggered before unit {index}: {delay_ms}ms")
        await self._wait_for_cooldown(index)

    async def _wait_for_cooldown(self, index: int) -> None:
        logged = False
        while True:
            remaining_ms = (self._backpressure_until - time.monotonic()) * 1000
            if remaining_ms <= 0:
                return
            if not logged:
                logger.debug(f"Delaying unit {index} for {remaining_ms:.0f}ms of backpressure")
                logged = True
            await asyncio.sleep(min(remaining_ms, MAX_COOLDOWN_SLEEP_MS) / 1000)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
