"""Bounded-concurrency batch execution with settle-all semantics."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar, Union

from .logger import get_logger

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_PAUSE = 1.0


class BatchDispatcher:
    """Run a coroutine per item, ``batch_size`` at a time.

    Batch N settles completely before batch N+1 starts and a fixed pause is
    inserted between batches. An exception raised for one item is returned in
    that item's slot; it never cancels or delays its siblings.
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        pause_seconds: float = DEFAULT_BATCH_PAUSE,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger=None,
    ):
        self.batch_size = max(1, int(batch_size))
        self.pause_seconds = max(0.0, float(pause_seconds))
        self._sleep = sleep
        self.logger = logger or get_logger("LeadAutoSync.dispatcher")

    def batches(self, items: Sequence[T]) -> List[Sequence[T]]:
        """Split ``items`` into consecutive groups of ``batch_size``."""
        return [items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> List[Union[R, BaseException]]:
        """Execute ``worker`` for every item and return results in input order."""
        results: List[Union[R, BaseException]] = []
        groups = self.batches(items)
        for index, group in enumerate(groups, start=1):
            self.logger.info("Processing batch %d/%d (%d tenants)", index, len(groups), len(group))
            settled = await asyncio.gather(*(worker(item) for item in group), return_exceptions=True)
            results.extend(settled)
            if index < len(groups) and self.pause_seconds:
                await self._sleep(self.pause_seconds)
        return results
