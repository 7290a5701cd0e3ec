# Overview: Service-layer operations for concurrency; per-product locking, write transactions and retry.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import LockTimeout

"""
Concurrency Guard Invariants (authoritative)

- Locking granularity is the product, never the batch: all batches of a
  product are planned against one snapshot.
- Locks are always acquired in ascending product id order, in-process and in
  the database, so two carts sharing products cannot wait on each other.
- Stock is read for planning only after the locks are held.
- Locks are held until commit/rollback and never across user interaction.
"""

# Postgres SQLSTATEs for lock_not_available and deadlock_detected
_PG_LOCK_STATES = {"55P03", "40P01"}


class LockAcquisitionTimeout(Exception):
    def __init__(self, key, timeout: float):
        super().__init__(f"could not lock {key!r} within {timeout:g}s")
        self.key = key
        self.timeout = timeout


class KeyedLockRegistry:
    """
    Exclusive in-process locks keyed by product id.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with the catalogue.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    def _checkout(self, key) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def is_held(self, key) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return bool(entry and entry[0].locked())

    @contextmanager
    def hold(self, keys: Iterable, timeout: float):
        """Acquire every key in ascending order, sharing one deadline."""
        ordered = sorted(set(keys))
        deadline = time.monotonic() + timeout
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise LockAcquisitionTimeout(key, timeout)
                acquired.append((key, lock))
            yield ordered
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


product_locks = KeyedLockRegistry()


def lock_for_update(query):
    """
    Apply row-level locking for critical operations and refresh any rows
    already in the identity map.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    takes the database write lock there instead.
    """
    return query.with_for_update().populate_existing()


def begin_write_transaction(lock_timeout_seconds: float | None = None) -> None:
    """
    Open the session's transaction in write mode.

    SQLite: BEGIN IMMEDIATE, so the snapshot read for planning is the latest
    committed state and no other writer can slip in before commit. The wait
    for the file lock is bounded by busy_timeout, set from the caller's
    remaining lock budget instead of the driver's 5s default.
    PostgreSQL: bound row-lock waits with a transaction-local lock_timeout.
    """
    dialect = db.engine.dialect.name
    if dialect == "sqlite":
        conn = db.session.connection()
        if not conn.connection.dbapi_connection.in_transaction:
            if lock_timeout_seconds is not None:
                timeout_ms = max(1, int(lock_timeout_seconds * 1000))
                conn.exec_driver_sql(f"PRAGMA busy_timeout = {timeout_ms}")
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    elif dialect == "postgresql" and lock_timeout_seconds is not None:
        timeout_ms = max(1, int(lock_timeout_seconds * 1000))
        db.session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def is_lock_contention(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    state = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if state in _PG_LOCK_STATES:
        return True
    message = str(orig or exc).lower()
    return "database is locked" in message or "lock timeout" in message


@contextmanager
def product_guard(product_ids: Iterable[int], *, timeout: float):
    """
    Hold the per-product locks for product_ids and open a write transaction.

    The caller commits inside the block; any exception rolls the session back
    before the locks are released.
    """
    deadline = time.monotonic() + timeout
    try:
        with product_locks.hold(product_ids, timeout) as ordered:
            # in-process wait and database wait share one budget
            begin_write_transaction(lock_timeout_seconds=max(0.0, deadline - time.monotonic()))
            try:
                yield ordered
            except BaseException:
                db.session.rollback()
                raise
    except LockAcquisitionTimeout as exc:
        raise LockTimeout(
            "Timed out waiting for stock lock; retry with the same transaction id",
            details={"product_id": exc.key, "timeout_seconds": exc.timeout},
        ) from exc


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
