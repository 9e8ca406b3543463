"""
Main message broker implementation.
Coordinates the message store, subscription registry, delivery scheduler,
expiry sweeper and the connections that publish and consume.
"""
import threading
import time
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .config import Config, get_config
from .errors import MalformedRequest
from .frame import (
    Frame, FrameBuilder, FrameType, create_ack_frame, create_heartbeat_frame,
    create_message_frame, create_snapshot_frame, parse_bool, parse_expiry,
)
from .message import Message
from .protocol import ClientConnection, ProtocolError, ProtocolHandler
from .scheduler import DeliveryScheduler
from .store import MessageStore
from .subscription import Group, SubscriptionRegistry
from .sweeper import ExpirySweeper


logger = logging.getLogger(__name__)

SERVER_NAME = 'QueueBit'
VERSION = '1.0.0'


class MessageBroker:
    """Main message broker coordinating all components"""

    def __init__(self,
                 config: Optional[Config] = None,
                 push: Optional[Callable[[Any, Message, Optional[Group]], None]] = None):
        self.config = config or get_config()
        self.default_subject = self.config.get('broker.default_subject', 'default')

        # Serializes every mutation of store and registry
        self._lock = threading.RLock()
        # Orders subscribe replays against scheduled pushes; taken before _lock
        self._delivery_lock = threading.RLock()
        self._push = push or self._push_frame

        # Initialize components
        self.store = MessageStore(self.config.get_int('broker.max_queue_size', 10000))
        self.registry = SubscriptionRegistry()
        self.scheduler = DeliveryScheduler(
            self.store,
            self.registry,
            self._push,
            lock=self._lock,
            batch_size=self.config.get_int('broker.delivery_batch_size', 100),
            delivery_lock=self._delivery_lock
        )
        self.sweeper = ExpirySweeper(
            self.store,
            self.config.get_int('broker.expiry_sweep_interval_ms', 1000)
        )
        self.protocol_handler = ProtocolHandler(self.config)

        self._running = False

        # Register protocol frame handlers
        self._register_protocol_handlers()

    def start(self) -> None:
        """Start the message broker"""
        with self._lock:
            if self._running:
                return

            logger.info("Starting message broker...")

            self.scheduler.start()
            self.sweeper.start()
            self.protocol_handler.start()

            self._running = True

            logger.info("Message broker started successfully")

    def stop(self) -> None:
        """Stop the message broker"""
        with self._lock:
            if not self._running:
                return
            self._running = False

        logger.info("Stopping message broker...")

        self.protocol_handler.stop()
        self.sweeper.stop()
        self.scheduler.stop()

        logger.info("Message broker stopped")

    @property
    def running(self) -> bool:
        return self._running

    # Core operations

    def publish(self,
                payload: Union[bytes, str],
                subject: Optional[str] = None,
                expires_at: Optional[float] = None,
                remove_after_read: bool = False) -> Message:
        """
        Accept a message for delivery.

        Returning means the message was stored and queued; delivery happens
        later on the scheduler thread. Raises CapacityExceeded when the
        subject's queue is full.
        """
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        subject = subject or self.default_subject

        with self._lock:
            return self.store.publish(subject, payload, expires_at, remove_after_read)

    def subscribe(self, consumer: Any, subject: Optional[str] = None, queue: Optional[str] = None) -> Optional[Group]:
        """
        Register a consumer on a subject.

        With ``queue`` the consumer joins that load-balanced group and the
        group is returned. Otherwise it becomes a fan-out subscriber and
        immediately receives the retained backlog, minus remove-after-read
        messages.
        """
        subject = subject or self.default_subject

        if queue:
            with self._lock:
                return self.registry.subscribe_group(subject, queue, consumer)

        # The scheduler cannot push newer messages to this consumer until
        # the backlog has been replayed
        with self._delivery_lock:
            with self._lock:
                self.registry.subscribe_fanout(subject, consumer)
                replay = self.store.retained_snapshot(subject, include_remove_after_read=False)

            for message in replay:
                self._push_safely(consumer, message, None)

        if replay:
            logger.debug(f"Replayed {len(replay)} retained messages on {subject}")
        return None

    def unsubscribe(self, consumer: Any, subject: Optional[str] = None, queue: Optional[str] = None) -> bool:
        """Remove a fan-out subscription, or group membership when ``queue`` is given"""
        subject = subject or self.default_subject
        with self._lock:
            return self.registry.unsubscribe(subject, consumer, queue or None)

    def on_disconnect(self, consumer: Any) -> int:
        """Forget a consumer everywhere; safe to call more than once"""
        with self._lock:
            removed = self.registry.remove_consumer(consumer)
        if removed:
            logger.info(f"Removed {removed} subscriptions for {consumer!r}")
        return removed

    def get_messages(self, subject: Optional[str] = None) -> List[Message]:
        """Current retained snapshot for a subject"""
        return self.store.retained_snapshot(subject or self.default_subject)

    # Connections

    def add_client_connection(self, client_socket, address) -> ClientConnection:
        """Add a new client connection and greet it with server info"""
        connection = self.protocol_handler.add_connection(client_socket, address)
        try:
            connection.send_frame(self._create_server_info())
        except ProtocolError:
            self.protocol_handler.remove_connection(connection.connection_id)
            raise
        return connection

    def remove_client_connection(self, connection: ClientConnection) -> None:
        """Remove a client connection and drop its subscriptions"""
        self.protocol_handler.remove_connection(connection.connection_id)
        self.on_disconnect(connection)
        logger.info(f"Cleaned up client connection {connection.connection_id}")

    def _push_frame(self, consumer: ClientConnection, message: Message, group: Optional[Group]) -> None:
        """Default push: write a MESSAGE frame to the consumer's connection"""
        if not consumer.connected:
            # Disconnected between routing and push
            logger.debug(f"Skipping push of {message.id} to closed {consumer!r}")
            return

        frame = create_message_frame(
            message,
            group.group_id if group else None,
            group.name if group else None
        )
        consumer.send_frame(frame)

    def _push_safely(self, consumer: Any, message: Message, group: Optional[Group]) -> None:
        try:
            self._push(consumer, message, group)
        except Exception as e:
            logger.warning(f"Failed to push message {message.id} to {consumer!r}: {e}")

    # Protocol handlers

    def _register_protocol_handlers(self) -> None:
        """Register frame handlers with the protocol handler"""
        handlers = {
            FrameType.PUBLISH: self._handle_publish,
            FrameType.SUBSCRIBE: self._handle_subscribe,
            FrameType.UNSUBSCRIBE: self._handle_unsubscribe,
            FrameType.GET_MESSAGES: self._handle_get_messages,
            FrameType.HEARTBEAT: self._handle_heartbeat,
        }

        for frame_type, handler in handlers.items():
            self.protocol_handler.register_handler(frame_type, handler)

    def _handle_publish(self, connection: ClientConnection, frame: Frame) -> Frame:
        """Handle publish request"""
        props = frame.properties
        try:
            expires_at = parse_expiry(props.get('expiry'))
            remove_after_read = parse_bool(props.get('remove_after_read'))
        except ValueError as e:
            raise MalformedRequest(str(e))

        message = self.publish(
            frame.body,
            subject=props.get('subject'),
            expires_at=expires_at,
            remove_after_read=remove_after_read
        )

        return create_ack_frame(frame.sequence_number, message_id=message.id, subject=message.subject)

    def _handle_subscribe(self, connection: ClientConnection, frame: Frame) -> Frame:
        """Handle subscribe request"""
        subject = frame.properties.get('subject') or self.default_subject
        queue = frame.properties.get('queue') or None

        group = self.subscribe(connection, subject, queue)

        return create_ack_frame(
            frame.sequence_number,
            subject=subject,
            queue=queue,
            queue_id=group.group_id if group else None
        )

    def _handle_unsubscribe(self, connection: ClientConnection, frame: Frame) -> Frame:
        """Handle unsubscribe request"""
        subject = frame.properties.get('subject') or self.default_subject
        queue = frame.properties.get('queue') or None

        self.unsubscribe(connection, subject, queue)

        return create_ack_frame(frame.sequence_number, subject=subject, queue=queue)

    def _handle_get_messages(self, connection: ClientConnection, frame: Frame) -> Frame:
        """Handle retained snapshot request"""
        messages = self.get_messages(frame.properties.get('subject'))
        return create_snapshot_frame(messages, frame.sequence_number)

    def _handle_heartbeat(self, connection: ClientConnection, frame: Frame) -> Frame:
        return create_heartbeat_frame(frame.sequence_number)

    def _create_server_info(self) -> Frame:
        return (FrameBuilder(FrameType.SERVER_INFO)
                .property('name', SERVER_NAME)
                .property('version', VERSION)
                .property('timestamp', repr(time.time()))
                .build())

    # Management APIs

    def list_subjects(self) -> List[str]:
        """Subjects that have been published or subscribed to"""
        subjects = self.store.list_subjects()
        for subject in self.registry.list_subjects():
            if subject not in subjects:
                subjects.append(subject)
        return subjects

    def get_broker_stats(self) -> Dict[str, Any]:
        """Get overall broker statistics"""
        with self._lock:
            subjects = self.list_subjects()
            subject_stats = []
            for subject in subjects:
                stats = self.registry.get_subject_stats(subject) or {
                    'subject': subject, 'subscribers': 0, 'groups': []
                }
                stats['retained'] = self.store.retained_count(subject)
                subject_stats.append(stats)

            protocol_stats = self.protocol_handler.get_stats()

            return {
                'name': SERVER_NAME,
                'version': VERSION,
                'subjects': len(subjects),
                'subject_stats': subject_stats,
                'pending_deliveries': self.store.pending_count(),
                'delivered': self.scheduler.delivered_count,
                'max_queue_size': self.store.max_queue_size,
                'active_connections': protocol_stats['active_connections'],
            }
