import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from hyperfleet_controller.state_machine import Observation


class WorkQueue:
    """Keyed work queue that never hands the same key to two workers.

    A key added while it is being processed is parked and redelivered after
    ``done()``. An observation attached to ``add()`` travels with the key to
    the next ``get()``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._hints: dict[str, Observation] = {}
        self._delayed: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._shutting_down = False

    def _add_locked(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)

    def add(self, key: str, observation: Observation | None = None) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if observation is not None:
                self._hints[key] = observation
            self._add_locked(key)

    def add_after(self, key: str, delay_sec: float) -> None:
        if delay_sec <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(
                self._delayed, (self._clock() + delay_sec, next(self._seq), key)
            )
            self._cond.notify()

    def get(
        self, timeout: float | None = None
    ) -> tuple[str, Observation | None] | None:
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key, self._hints.pop(key, None)
                if self._shutting_down:
                    return None
                now = self._clock()
                waits: list[float] = []
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)
                if self._delayed:
                    waits.append(max(self._delayed[0][0] - now, 0.0))
                self._cond.wait(min(waits) if waits else None)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def delayed(self) -> int:
        with self._cond:
            return len(self._delayed)
