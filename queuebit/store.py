"""
In-memory message store.
Keeps a bounded, ordered backlog of retained messages per subject and the
FIFO sequence of messages waiting for delivery.
"""
import threading
import time
import logging
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional

from .message import Message
from .errors import CapacityExceeded


logger = logging.getLogger(__name__)


class MessageStore:
    """Thread-safe retained storage for all subjects"""

    def __init__(self, max_queue_size: int = 10000):
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self.max_queue_size = max_queue_size

        # subject -> message_id -> Message, oldest first
        self._retained: Dict[str, 'OrderedDict[str, Message]'] = {}
        self._pending: Deque[Message] = deque()

        self._lock = threading.RLock()
        self._pending_ready = threading.Condition(self._lock)

    def publish(self,
                subject: str,
                payload: bytes,
                expires_at: Optional[float] = None,
                remove_after_read: bool = False) -> Message:
        """
        Retain a new message and queue it for delivery.

        Raises CapacityExceeded, without storing anything, when the subject
        already holds ``max_queue_size`` messages.
        """
        with self._lock:
            retained = self._retained.setdefault(subject, OrderedDict())
            if len(retained) >= self.max_queue_size:
                logger.warning(f"Rejected publish on {subject}: queue full ({self.max_queue_size})")
                raise CapacityExceeded(subject, self.max_queue_size)

            message = Message(
                subject=subject,
                payload=payload,
                expires_at=expires_at,
                remove_after_read=remove_after_read
            )
            retained[message.id] = message
            self._pending.append(message)
            self._pending_ready.notify()

            logger.debug(f"Stored {message} ({len(retained)} retained on {subject})")
            return message

    def retained_snapshot(self, subject: str, include_remove_after_read: bool = True) -> List[Message]:
        """Copy of the subject's retained messages, oldest first"""
        with self._lock:
            retained = self._retained.get(subject)
            if not retained:
                return []
            if include_remove_after_read:
                return list(retained.values())
            return [m for m in retained.values() if not m.remove_after_read]

    def retained_count(self, subject: str) -> int:
        with self._lock:
            return len(self._retained.get(subject, ()))

    def remove(self, subject: str, message_id: str) -> bool:
        """Remove a retained message; returns False if it was not there"""
        with self._lock:
            retained = self._retained.get(subject)
            if retained is None or message_id not in retained:
                return False
            del retained[message_id]
            return True

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Drop every retained message whose expiry is at or before ``now``"""
        if now is None:
            now = time.time()

        removed = 0
        with self._lock:
            for subject, retained in self._retained.items():
                expired = [mid for mid, m in retained.items() if m.is_expired(now)]
                for message_id in expired:
                    del retained[message_id]
                if expired:
                    logger.debug(f"Expired {len(expired)} messages on {subject}")
                removed += len(expired)
        return removed

    def take_pending(self, limit: int) -> List[Message]:
        """Pop up to ``limit`` messages from the head of the pending sequence"""
        with self._lock:
            batch = []
            while self._pending and len(batch) < limit:
                batch.append(self._pending.popleft())
            return batch

    def wait_for_pending(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a message is pending, ``timeout`` elapses or wake() is called.
        Returns whether anything is pending.
        """
        with self._pending_ready:
            if not self._pending:
                self._pending_ready.wait(timeout)
            return len(self._pending) > 0

    def wake(self) -> None:
        """Wake any thread blocked in wait_for_pending"""
        with self._pending_ready:
            self._pending_ready.notify_all()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def list_subjects(self) -> List[str]:
        with self._lock:
            return list(self._retained.keys())
