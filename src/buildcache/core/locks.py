"""Per-job locks serializing cache restore and save of the same job."""

import threading
import weakref
from types import TracebackType


class JobLock:
    """A mutex owned by one job name."""

    def __init__(self, job: str):
        self.job = job
        self._lock = threading.Lock()

    def acquire(self, timeout: float = -1) -> bool:
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> "JobLock":
        self._lock.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._lock.release()

    def __repr__(self) -> str:
        return f"JobLock(job={self.job!r}, locked={self.locked()})"


class JobLocks:
    """Lock map keyed by job name.

    Entries are held weakly: a job's lock disappears as soon as no running
    build references it, so the map stays bounded by the number of builds
    in flight. Different jobs never share a lock.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, JobLock] = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def lock_for(self, job: str) -> JobLock:
        """Return the lock of ``job``; keep the reference while using it."""
        with self._guard:
            lock = self._locks.get(job)
            if lock is None:
                lock = JobLock(job)
                self._locks[job] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, job: object) -> bool:
        return job in self._locks


# Process wide lock map shared by all sessions
JOB_LOCKS = JobLocks()
