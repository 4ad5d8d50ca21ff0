import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterator

_registry_lock = threading.Lock()
_locks: dict[tuple[str, date], threading.RLock] = {}


def _lock_for(scope: str, shift_day: date) -> threading.RLock:
    with _registry_lock:
        lock = _locks.get((scope, shift_day))
        if lock is None:
            lock = threading.RLock()
            _locks[(scope, shift_day)] = lock
        return lock


@contextmanager
def shift_lock(scope: str, shift_day: date) -> Iterator[None]:
    lock = _lock_for(scope, shift_day)
    with lock:
        yield
