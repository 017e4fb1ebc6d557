"""
Bounded per-resource concurrency with cooperative cancellation.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Optional, TypeVar

from .errors import OrchestrationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Operator-initiated abort, safe to set from a signal handler"""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.warning(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OrchestrationCancelled(self.reason or "cancelled")


class ResultCollector:
    """Per-key results and failures appended from concurrent workers"""

    def __init__(self):
        self._lock = threading.Lock()
        self.results: Dict[Hashable, Any] = {}
        self.failures: Dict[Hashable, BaseException] = {}

    def add_result(self, key: Hashable, value: Any):
        with self._lock:
            self.results[key] = value

    def add_failure(self, key: Hashable, error: BaseException):
        with self._lock:
            self.failures[key] = error

    @property
    def cancelled_keys(self):
        with self._lock:
            return sorted(k for k, e in self.failures.items() if isinstance(e, OrchestrationCancelled))


async def run_bounded(items: Iterable[T], worker: Callable[[T], Awaitable[Any]],
                      key: Callable[[T], Hashable], max_workers: int,
                      token: CancellationToken) -> ResultCollector:
    """Run worker for every item, at most max_workers at a time.

    Every item is attempted; failures are collected rather than raised so
    the caller sees the whole phase at once. Once the token is cancelled no
    new item starts, while items already inside worker() run to completion.
    """
    semaphore = asyncio.Semaphore(max_workers)
    collector = ResultCollector()

    async def run_one(item: T):
        item_key = key(item)
        async with semaphore:
            if token.cancelled:
                collector.add_failure(item_key, OrchestrationCancelled(token.reason or "cancelled"))
                return
            try:
                value = await worker(item)
            except Exception as e:
                logger.debug(f"Worker for {item_key} failed: {e}")
                collector.add_failure(item_key, e)
            else:
                collector.add_result(item_key, value)

    await asyncio.gather(*(run_one(item) for item in items))
    return collector
