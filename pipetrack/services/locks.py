"""
Write locks for the import commit phase and per-component milestone writes.

project_commit_lock(project_id)
    Serializes import commits per project.  On PostgreSQL it takes a
    transaction-scoped advisory lock (released automatically at COMMIT or
    ROLLBACK, so a crashed writer never leaves it behind), polling
    pg_try_advisory_xact_lock until COMMIT_LOCK_TIMEOUT_SECONDS.  Other
    dialects fall back to an in-process lock keyed by project.

component_lock(component_id)
    Serializes read-modify-write of one component's milestone state.  The
    in-process keyed lock covers threads of this worker; the caller also
    re-reads the row with SELECT … FOR UPDATE, which covers other workers
    on PostgreSQL.

Both raise ConcurrencyConflict on timeout.  Hold them only around writes:
bulk reads and similarity lookups happen before acquisition.
"""

import logging
import threading
import time
from contextlib import contextmanager

from flask import current_app

from pipetrack.core.exceptions import ConcurrencyConflict
from pipetrack.models import db

logger = logging.getLogger(__name__)

# Advisory lock namespace so project ids never collide with other lock users
_ADVISORY_NAMESPACE = 0x5054  # "PT"
_POLL_INTERVAL = 0.05


class KeyedLockRegistry:
    """One threading.Lock per key, created on demand."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    def get(self, key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def clear(self):
        with self._guard:
            self._locks.clear()


_project_locks = KeyedLockRegistry()
_component_locks = KeyedLockRegistry()


def _timeout(default):
    return float(current_app.config.get("COMMIT_LOCK_TIMEOUT_SECONDS", default))


def _is_postgres() -> bool:
    return db.engine.dialect.name == "postgresql"


def _acquire_advisory(project_id: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while True:
        acquired = db.session.execute(
            db.text("SELECT pg_try_advisory_xact_lock(:ns, :key)"),
            {"ns": _ADVISORY_NAMESPACE, "key": project_id},
        ).scalar()
        if acquired:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(_POLL_INTERVAL)


@contextmanager
def project_commit_lock(project_id: int, timeout: float | None = None):
    """Hold the per-project import write lock for the body of the ``with``."""
    timeout = _timeout(10) if timeout is None else timeout

    if _is_postgres():
        if not _acquire_advisory(project_id, timeout):
            logger.warning("Commit lock timeout project=%s after %.1fs", project_id, timeout,
                           extra={"project_id": project_id})
            raise ConcurrencyConflict(
                f"Another import for project {project_id} is being committed; retry shortly",
                retry_after=max(timeout, 1.0),
            )
        # released by the surrounding transaction's COMMIT / ROLLBACK
        yield
        return

    lock = _project_locks.get(project_id)
    if not lock.acquire(timeout=timeout):
        logger.warning("Commit lock timeout project=%s after %.1fs", project_id, timeout,
                       extra={"project_id": project_id})
        raise ConcurrencyConflict(
            f"Another import for project {project_id} is being committed; retry shortly",
            retry_after=max(timeout, 1.0),
        )
    try:
        yield
    finally:
        lock.release()


@contextmanager
def component_lock(component_id: int, timeout: float | None = None):
    """Serialize milestone writes on one component within this process."""
    timeout = _timeout(10) if timeout is None else timeout
    lock = _component_locks.get(component_id)
    if not lock.acquire(timeout=timeout):
        raise ConcurrencyConflict(
            f"Component {component_id} is being updated by another request; retry shortly",
            retry_after=1.0,
        )
    try:
        yield
    finally:
        lock.release()


def reset_locks():
    """Drop all in-process locks (for testing)."""
    _project_locks.clear()
    _component_locks.clear()
