import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis

from ..core.errors import FunctionBusyError

logger = logging.getLogger(__name__)


class _SharedLock:
    """Many shared holders or one exclusive holder. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_shared(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_shared(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_exclusive(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_exclusive(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class LocalFunctionLocks:
    """
    In-process reader-writer locks per function id.

    hold() is exclusive and guards changes to a function and its worker.
    share() lets any number of invocations run together while keeping
    hold() out until they finish.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _SharedLock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def _checkout(self, function_id: str) -> Iterator[_SharedLock]:
        with self._guard:
            lock = self._locks.setdefault(function_id, _SharedLock())
            self._users[function_id] = self._users.get(function_id, 0) + 1
        try:
            yield lock
        finally:
            with self._guard:
                self._users[function_id] -= 1
                if self._users[function_id] == 0:
                    del self._users[function_id]
                    del self._locks[function_id]

    @contextmanager
    def hold(self, function_id: str) -> Iterator[None]:
        with self._checkout(function_id) as lock:
            lock.acquire_exclusive()
            try:
                yield
            finally:
                lock.release_exclusive()

    @contextmanager
    def share(self, function_id: str) -> Iterator[None]:
        with self._checkout(function_id) as lock:
            lock.acquire_shared()
            try:
                yield
            finally:
                lock.release_shared()

    def __len__(self):
        return len(self._locks)


class RedisFunctionLocks:
    """
    Per function id locks shared by every manager process using the same Redis.

    The exclusive side is a redis lock. Shared holders take that lock only long
    enough to bump a reader counter, and an exclusive holder waits for the
    counter to drain before proceeding. The lease (timeout) bounds how long a
    crashed holder can block others; the blocking timeout bounds how long a
    caller waits before FunctionBusyError.
    """

    KEY_PREFIX = "faas:function-lock:"
    READERS_PREFIX = "faas:function-readers:"
    READER_POLL_INTERVAL = 0.1

    def __init__(self, redis_client: redis.Redis, timeout: float = 300, blocking_timeout: Optional[float] = 30):
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisFunctionLocks":
        return cls(redis.Redis.from_url(url), **kwargs)

    @contextmanager
    def hold(self, function_id: str) -> Iterator[None]:
        with self._exclusive(function_id):
            self._wait_for_readers(function_id)
            yield

    @contextmanager
    def share(self, function_id: str) -> Iterator[None]:
        readers_key = self.READERS_PREFIX + function_id
        with self._exclusive(function_id):
            self.redis.incr(readers_key)
            # A crashed reader must not pin the counter forever
            self.redis.expire(readers_key, int(self.timeout))
        try:
            yield
        finally:
            self.redis.decr(readers_key)

    @contextmanager
    def _exclusive(self, function_id: str) -> Iterator[None]:
        lock = self.redis.lock(
            self.KEY_PREFIX + function_id,
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not lock.acquire():
            raise FunctionBusyError(function_id)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # Lease expired while the operation was still running
                logger.warning(f"Lock for function {function_id} was lost before release: {str(e)}")

    def _wait_for_readers(self, function_id: str):
        readers_key = self.READERS_PREFIX + function_id
        deadline = None
        if self.blocking_timeout is not None:
            deadline = time.monotonic() + self.blocking_timeout

        while int(self.redis.get(readers_key) or 0) > 0:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Invocations of function {function_id} still running, giving up on exclusive lock")
                raise FunctionBusyError(function_id)
            time.sleep(self.READER_POLL_INTERVAL)
