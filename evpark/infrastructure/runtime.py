# File: evpark/infrastructure/runtime.py
"""
Host capabilities injected into the engine

1. Clock - current local wall-clock time (system or fixed)
2. Lock - mutual exclusion around mutating commands and the sweep
   (in-process RLock, or a Redis lock shared between hosts)
3. PeriodicTrigger - wakes the sweep on an interval
"""

from typing import Optional, Callable, Protocol
from datetime import datetime, timedelta
import logging
import threading

import redis

from ..domain.errors import TransientInfrastructureError


# ============================================================================
# CLOCKS
# ============================================================================

class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Local wall-clock time, second resolution"""

    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


class FixedClock:
    """Clock pinned to a moment; tests move it explicitly"""

    def __init__(self, moment: datetime):
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def set(self, moment: datetime) -> None:
        self._moment = moment

    def advance(self, **kwargs) -> datetime:
        self._moment = self._moment + timedelta(**kwargs)
        return self._moment


# ============================================================================
# LOCKS
# ============================================================================

class Lock(Protocol):
    def __enter__(self):
        ...

    def __exit__(self, exc_type, exc_val, exc_tb):
        ...


class InProcessLock:
    """Re-entrant lock for a single host process"""

    def __init__(self):
        self._lock = threading.RLock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._lock.release()
        return False


class RedisLock:
    """Distributed lock shared by every host pointed at the same Redis"""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        name: str = "evpark:lock",
        timeout: float = 30.0,
        blocking_timeout: float = 10.0,
        client: Optional[redis.Redis] = None
    ):
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.redis_client = client or redis.Redis.from_url(redis_url)
        self._lock = None
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        lock = self.redis_client.lock(
            self.name, timeout=self.timeout, blocking_timeout=self.blocking_timeout
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise TransientInfrastructureError(f"Lock service temporarily unavailable: {e}") from e
        if not acquired:
            raise TransientInfrastructureError(
                f"Timed out waiting for lock {self.name}; try again."
            )
        self._lock = lock
        self._logger.debug(f"Acquired {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        lock, self._lock = self._lock, None
        if lock is not None:
            try:
                lock.release()
                self._logger.debug(f"Released {self.name}")
            except redis.exceptions.LockError as e:
                self._logger.warning(f"Lock {self.name} expired before release: {e}")
        return False


# ============================================================================
# PERIODIC TRIGGER
# ============================================================================

class PeriodicTrigger(Protocol):
    def start(self, callback: Callable[[], None]) -> None:
        ...

    def stop(self) -> None:
        ...


class IntervalTrigger:
    """Calls the callback every interval seconds on a daemon thread"""

    def __init__(self, interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("Interval must be positive")
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, callback: Callable[[], None]) -> None:
        if self.running:
            raise RuntimeError("Trigger already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, args=(callback,), daemon=True)
        self._thread.start()
        self._logger.info(f"Started trigger every {self.interval_seconds}s")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds + 1)
        self._thread = None
        self._logger.info("Stopped trigger")

    def wait(self) -> None:
        """Block until stop() is called (or the process is interrupted)"""
        while self.running:
            self._stop_event.wait(1.0)

    def _run(self, callback: Callable[[], None]) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                callback()
            except Exception as e:
                # The next tick still runs
                self._logger.error(f"Scheduled callback failed: {e}", exc_info=True)
