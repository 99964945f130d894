"""Bounded execution of normalization jobs for the async API.

    request -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> BatchNormalizer

A request that cannot get a slot within ``queue_timeout`` seconds fails with
``TimeoutError`` (503 at the route). Detector calls stay serialized inside
``LandmarkExtractor`` regardless of N.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from alignx.alignment.batch import CancellationToken

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from alignx.alignment.batch import BatchNormalizer, NormalizationResult
    from alignx.ml.preprocessing import ImageRecord

logger = logging.getLogger(__name__)


class NormalizationPool:
    """Admits at most ``max_concurrent`` jobs and runs them off the event loop."""

    def __init__(self, max_concurrent: int, queue_timeout: float = 5.0) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="alignx-normalize")
        self._queue_timeout = queue_timeout
        self._active = 0
        self._waiting = 0
        self._counter_lock = threading.Lock()

    @property
    def active_count(self) -> int:
        with self._counter_lock:
            return self._active

    @property
    def queue_depth(self) -> int:
        with self._counter_lock:
            return self._waiting

    async def normalize_one(self, normalizer: BatchNormalizer, record: ImageRecord) -> NormalizationResult:
        async with self._slot():
            return await asyncio.get_running_loop().run_in_executor(self._executor, normalizer.normalize_one, record)

    async def normalize_batch(
        self,
        normalizer: BatchNormalizer,
        records: Sequence[ImageRecord],
    ) -> list[NormalizationResult]:
        """Run a batch; if the awaiting request goes away the batch is cancelled.

        The worker thread cannot be interrupted, so cancellation takes effect
        between images.
        """
        token = CancellationToken()
        async with self._slot():
            future = asyncio.get_running_loop().run_in_executor(
                self._executor, normalizer.normalize_batch, records, token
            )
            try:
                return await future
            except asyncio.CancelledError:
                token.cancel()
                logger.info("Batch of %d images abandoned by client; cancelling", len(records))
                raise

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.info("Normalization pool shut down")

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        with self._counter_lock:
            self._waiting += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        finally:
            with self._counter_lock:
                self._waiting -= 1

        with self._counter_lock:
            self._active += 1
        try:
            yield
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active -= 1
