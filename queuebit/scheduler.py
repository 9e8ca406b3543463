"""
Delivery scheduler.
Drains newly published messages in bounded batches and routes each one either
to a single member of a load-balanced group or to every fan-out subscriber.
"""
import threading
import logging
from typing import Any, Callable, List, Optional, Tuple

from .message import Message
from .store import MessageStore
from .subscription import Group, SubscriptionRegistry


logger = logging.getLogger(__name__)

PushFunction = Callable[[Any, Message, Optional[Group]], None]
Delivery = Tuple[Any, Message, Optional[Group]]


class DeliveryScheduler:
    """Background worker routing pending messages to consumers"""

    def __init__(self,
                 store: MessageStore,
                 registry: SubscriptionRegistry,
                 push: PushFunction,
                 lock: Optional[threading.RLock] = None,
                 batch_size: int = 100,
                 idle_timeout: float = 0.5,
                 delivery_lock: Optional[threading.RLock] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.registry = registry
        self.batch_size = batch_size
        self.idle_timeout = idle_timeout
        self._push = push
        self._lock = lock or threading.RLock()
        # Held from taking a batch until its pushes are done; always acquired before _lock
        self._delivery_lock = delivery_lock or threading.RLock()

        self._thread: Optional[threading.Thread] = None
        self._running = False
        self.delivered_count = 0

    def start(self) -> None:
        """Start the delivery worker"""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(
            target=self._delivery_worker,
            daemon=True,
            name="DeliveryScheduler"
        )
        self._thread.start()
        logger.info(f"Delivery scheduler started (batch size {self.batch_size})")

    def stop(self) -> None:
        """Stop the delivery worker"""
        self._running = False
        self.store.wake()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)

        logger.info("Delivery scheduler stopped")

    def run_once(self) -> int:
        """Route one batch of pending messages; returns how many were taken"""
        with self._delivery_lock:
            batch = self.store.take_pending(self.batch_size)
            if not batch:
                return 0

            with self._lock:
                deliveries: List[Delivery] = []
                for message in batch:
                    deliveries.extend(self._route(message))

            # Push outside the state lock; socket writes may block
            for consumer, message, group in deliveries:
                self._deliver(consumer, message, group)

            return len(batch)

    def drain(self) -> int:
        """Route batches until nothing is pending"""
        total = 0
        while True:
            count = self.run_once()
            if not count:
                return total
            total += count

    def _route(self, message: Message) -> List[Delivery]:
        """Decide who receives a message and update retention accordingly"""
        subject = message.subject

        # Groups take priority over fan-out
        selection = self.registry.next_group_member(subject)
        if selection is not None:
            group, consumer = selection
            # Group deliveries always consume the message
            self.store.remove(subject, message.id)
            logger.debug(f"Routing {message.id} to group {group.name} ({group.group_id})")
            return [(consumer, message, group)]

        subscribers = self.registry.fanout_subscribers(subject)
        if message.remove_after_read:
            # Consumed on the first delivery attempt, never replayed
            self.store.remove(subject, message.id)

        if subscribers:
            logger.debug(f"Routing {message.id} to {len(subscribers)} subscribers on {subject}")
        return [(consumer, message, None) for consumer in subscribers]

    def _deliver(self, consumer: Any, message: Message, group: Optional[Group]) -> None:
        try:
            self._push(consumer, message, group)
            self.delivered_count += 1
        except Exception as e:
            logger.warning(f"Failed to push message {message.id} on {message.subject}: {e}")

    def _delivery_worker(self) -> None:
        """Wait for pending messages and route them one batch at a time"""
        while self._running:
            try:
                if self.store.wait_for_pending(self.idle_timeout):
                    self.run_once()
            except Exception as e:
                logger.error(f"Error in delivery scheduler: {e}")
