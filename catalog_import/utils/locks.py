import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class EntityLockManager:
    """
    Manages thread-safe locks per catalog entity type to ensure sequential insertion.
    This prevents race conditions during duplicate checking and insertion when
    several batches write the same entity type in parallel.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, entity_type: str) -> threading.Lock:
        """Get or create a lock for a specific entity type."""
        with cls._global_lock:
            if entity_type not in cls._locks:
                cls._locks[entity_type] = threading.Lock()
            return cls._locks[entity_type]

    @classmethod
    @contextmanager
    def acquire(cls, entity_type: str):
        """Context manager to acquire and release an entity lock."""
        lock = cls.get_lock(entity_type)
        lock.acquire()
        logger.debug("Acquired insert lock for '%s'", entity_type)
        try:
            yield
        finally:
            lock.release()


class SessionLockManager:
    """
    Hands out one re-entrant lock per import session.

    Workflow transitions for a session run while holding its lock, so two
    callers can never advance the same session concurrently. The lock is
    re-entrant because a transition action may chain straight into the next
    transition.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._global_lock = threading.Lock()

    def get_lock(self, session_id: str) -> threading.RLock:
        """Get or create the lock for a session."""
        with self._global_lock:
            if session_id not in self._locks:
                self._locks[session_id] = threading.RLock()
            return self._locks[session_id]

    def discard(self, session_id: str) -> None:
        with self._global_lock:
            self._locks.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        with self._global_lock:
            return session_id in self._locks

    @contextmanager
    def acquire(self, session_id: str):
        """Context manager to acquire and release a session lock."""
        lock = self.get_lock(session_id)
        logger.debug("Waiting for workflow lock on session %s", session_id)
        lock.acquire()
        logger.debug("Acquired workflow lock on session %s", session_id)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released workflow lock on session %s", session_id)
