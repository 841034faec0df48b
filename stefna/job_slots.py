"""
Concurrent job guard for background processing.

Every job handed to `BackgroundTasks` holds a slot until it finishes, so a
burst of submissions cannot flood the providers or exhaust the threadpool.
A submission that finds no free slot is rejected with 503 before anything
is reserved or written.
"""

import threading


class JobSlots:
    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._active = 0

    def acquire(self) -> bool:
        """
        Try to acquire a slot for a background job.
        Returns True if a slot is available, False if at capacity.
        """
        with self._lock:
            if self._active >= self.capacity:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        with self._lock:
            return self._active
