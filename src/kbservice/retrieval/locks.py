"""
Reader/writer lock for stores that keep their data in process memory.

Readers share the lock with each other; a writer excludes readers and other
writers. Waiting writers block new readers so writes are not starved. The
thread holding the write lock may re-acquire it (for reads or writes), which
lets a store run several of its own operations inside one transaction.
"""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional


class ReadWriteLock:
    """
    Writer-preferring reader/writer lock.

    Example:
        >>> lock = ReadWriteLock()
        >>> with lock.read_locked():
        ...     ...  # search
        >>> with lock.write_locked():
        ...     ...  # add / delete
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._waiting_writers = 0
        self._writer: Optional[int] = None
        self._write_depth = 0

    def _owns_write(self) -> bool:
        return self._writer == threading.get_ident()

    def acquire_read(self) -> None:
        with self._cond:
            if self._owns_write():
                self._write_depth += 1
                return
            while self._writer is not None or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._owns_write():
                self._write_depth -= 1
                return
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            if self._owns_write():
                self._write_depth += 1
                return
            self._waiting_writers += 1
            try:
                while self._writer is not None or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = threading.get_ident()
            self._write_depth = 1

    def release_write(self) -> None:
        with self._cond:
            if not self._owns_write():
                raise RuntimeError("release_write called by a thread that does not hold the lock")
            self._write_depth -= 1
            if self._write_depth == 0:
                self._writer = None
                self._cond.notify_all()

    @property
    def readers(self) -> int:
        """Number of threads currently holding the read side."""
        return self._readers

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
