"""
Bounded polling of an asynchronous provider job.

`PollTask` owns the timer and the done signal so every caller gets the same
rules: fixed interval, transient fetch errors are logged and retried on the
next tick, and the wall-clock ceiling is hard.  Each fetch runs on a worker
thread and is only waited on for the time left, so a status call stuck in
HTTP timeouts and retries cannot hold the job past its ceiling; a result
that arrives after the ceiling is discarded.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from ..errors import JobTimeout
from ..providers.base import PollResult

logger = logging.getLogger(__name__)


class PollTask:
    def __init__(
        self,
        fetch: Callable[[], PollResult],
        interval: float,
        ceiling: float,
        label: str = "",
        on_tick: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if interval <= 0 or ceiling <= 0:
            raise ValueError("interval and ceiling must be positive")
        self._fetch = fetch
        self._interval = interval
        self._ceiling = ceiling
        self._label = label
        self._on_tick = on_tick
        self._clock = clock
        self._done = threading.Event()
        # Waiting on the done event makes cancel() wake a sleeping poller.
        self._sleep = sleep or (lambda seconds: self._done.wait(seconds))
        self.attempts = 0

    def cancel(self) -> None:
        self._done.set()

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def _fetch_within(self, executor: ThreadPoolExecutor, budget: float) -> Optional[PollResult]:
        """One fetch, abandoned once `budget` seconds pass. None means abandoned."""
        future = executor.submit(self._fetch)
        try:
            return future.result(timeout=budget)
        except FutureTimeout:
            if future.done():
                # the fetch itself raised a timeout
                raise
            future.cancel()
            return None

    def run(self) -> PollResult:
        started = self._clock()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="poll")

        try:
            while True:
                remaining = self._ceiling - (self._clock() - started)
                if remaining <= 0:
                    break
                self._sleep(min(self._interval, remaining))
                if self._done.is_set():
                    raise JobTimeout(f"Polling {self._label} cancelled")
                remaining = self._ceiling - (self._clock() - started)
                if remaining <= 0:
                    break

                self.attempts += 1
                try:
                    result = self._fetch_within(executor, remaining)
                except Exception as e:
                    logger.warning(f"Poll #{self.attempts} for {self._label} failed, retrying next tick: {e}")
                    continue

                if result is None:
                    logger.warning(f"Poll #{self.attempts} for {self._label} still pending at the ceiling")
                    break
                elapsed = self._clock() - started
                if elapsed > self._ceiling:
                    logger.warning(
                        f"Poll #{self.attempts} for {self._label} answered after {elapsed:.0f}s, discarding"
                    )
                    break

                if self._on_tick is not None:
                    self._on_tick(elapsed)

                if result.done:
                    self._done.set()
                    return result
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self._done.set()
        raise JobTimeout(f"Provider did not finish {self._label} within {self._ceiling:.0f}s")
