"""Named expiring locks.

Used to keep two bulk billing runs for the same service type from
overlapping. A lock row lives in the caller's transaction: a concurrent
run blocks on the unique lock name until the holder commits or rolls back.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from typing import Generator

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import SchedulerLock
from core.utils import ensure_aware, generate_unique_key, utcnow

LOGGER = get_logger(__name__)


class SchedulerLockService:
    """
    Service for distributed scheduler locking.

    Prevents concurrent runs of the same named job.
    """

    # Default lock duration in seconds
    DEFAULT_LOCK_DURATION = 1800  # 30 minutes

    def __init__(self, session: Session):
        """Initialize the scheduler lock service."""
        self.session = session
        self.instance_id = generate_unique_key()

    def acquire_lock(
        self,
        lock_name: str,
        duration_seconds: int = DEFAULT_LOCK_DURATION,
    ) -> bool:
        """
        Attempt to acquire a named lock.

        Args:
            lock_name: Name of the lock (e.g., "bulk_invoices_moving").
            duration_seconds: How long the lock stays valid.

        Returns:
            True if the lock was acquired, False if someone else holds it.
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=duration_seconds)

        existing = self.session.query(SchedulerLock).filter(
            SchedulerLock.lock_name == lock_name
        ).first()

        if existing:
            if now < ensure_aware(existing.expires_at):
                if existing.locked_by == self.instance_id:
                    existing.expires_at = expires_at
                    self.session.flush()
                    return True
                LOGGER.warning(f"Lock {lock_name} held by {existing.locked_by} until {existing.expires_at}")
                return False

            # Expired, take it over
            existing.locked_by = self.instance_id
            existing.locked_at = now
            existing.expires_at = expires_at
            self.session.flush()
            LOGGER.info(f"Acquired expired lock {lock_name}")
            return True

        try:
            with self.session.begin_nested():
                self.session.add(SchedulerLock(
                    lock_name=lock_name,
                    locked_by=self.instance_id,
                    locked_at=now,
                    expires_at=expires_at,
                ))
        except IntegrityError:
            LOGGER.warning(f"Lock {lock_name} was taken concurrently")
            return False

        LOGGER.info(f"Acquired lock {lock_name}")
        return True

    def release_lock(self, lock_name: str) -> None:
        """Release a lock this instance holds."""
        lock = self.session.query(SchedulerLock).filter(
            and_(
                SchedulerLock.lock_name == lock_name,
                SchedulerLock.locked_by == self.instance_id,
            )
        ).first()

        if lock:
            self.session.delete(lock)
            self.session.flush()
            LOGGER.info(f"Released lock {lock_name}")

    @contextmanager
    def scheduler_lock(
        self,
        lock_name: str,
        duration_seconds: int = DEFAULT_LOCK_DURATION,
    ) -> Generator[bool, None, None]:
        """
        Context manager for scheduler locking.

        Usage:
            with lock_service.scheduler_lock("bulk_invoices_moving") as acquired:
                if acquired:
                    # run billing

        Yields:
            True if the lock was acquired, False otherwise.
        """
        acquired = self.acquire_lock(lock_name, duration_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_lock(lock_name)


def get_scheduler_lock_service(session: Session) -> SchedulerLockService:
    """Get a SchedulerLockService instance."""
    return SchedulerLockService(session)


__all__ = [
    "SchedulerLockService",
    "get_scheduler_lock_service",
]
