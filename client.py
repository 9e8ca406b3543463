"""
Client library and CLI for the QueueBit broker.
"""
import socket
import threading
import time
import logging
import argparse
import json
import struct
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from queuebit.config import get_config
from queuebit.frame import (
    Frame, FrameBuilder, FrameType, create_heartbeat_frame, format_bool, message_from_frame,
)
from queuebit.message import Message


logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """A message pushed by the broker, with the group it was routed through"""
    message: Message
    queue_id: Optional[int] = None
    queue_name: Optional[str] = None

    @property
    def subject(self) -> str:
        return self.message.subject

    @property
    def data(self) -> bytes:
        return self.message.payload

    def text(self) -> str:
        return self.message.payload.decode('utf-8', errors='replace')


MessageHandler = Callable[[Delivery], None]


def _handler_key(subject: str, queue: Optional[str]) -> str:
    return f"{subject}:{queue}" if queue else subject


class BrokerClient:
    """Client for connecting to the message broker"""

    def __init__(self, host: str = '127.0.0.1', port: int = 3333, client_id: str = None):
        self.host = host
        self.port = port
        self.client_id = client_id or f"client_{int(time.time())}"

        self._socket: Optional[socket.socket] = None
        self._connected = False
        self._sequence_number = 0
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()

        # Response tracking
        self._response_handlers: Dict[int, threading.Event] = {}
        self._responses: Dict[int, Frame] = {}

        # subject or subject:queue -> handlers
        self._message_handlers: Dict[str, List[MessageHandler]] = {}

        self.server_version: Optional[str] = None
        self.received_messages = 0

        # Background threads
        self._receive_thread: Optional[threading.Thread] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._running = False
        self._stop_event = threading.Event()

        # Configuration
        self.config = get_config()
        self.heartbeat_interval = self.config.get('client.heartbeat_interval', 25)
        self.request_timeout = self.config.get('client.request_timeout', 5)

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Connect to the broker"""
        if self._connected:
            return

        try:
            self._socket = socket.create_connection((self.host, self.port))

            self._connected = True
            self._running = True
            self._stop_event.clear()

            self._receive_thread = threading.Thread(
                target=self._receive_worker,
                daemon=True,
                name=f"ClientReceive-{self.client_id}"
            )
            self._receive_thread.start()

            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_worker,
                daemon=True,
                name=f"ClientHeartbeat-{self.client_id}"
            )
            self._heartbeat_thread.start()

            logger.info(f"Connected to broker at {self.host}:{self.port}")

        except OSError as e:
            self._connected = False
            logger.error(f"Failed to connect to broker: {e}")
            raise

    def disconnect(self) -> None:
        """Disconnect from the broker"""
        if not self._running:
            return

        self._running = False
        self._connected = False
        self._stop_event.set()

        if self._socket:
            try:
                self._socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._socket.close()

        for thread in [self._receive_thread, self._heartbeat_thread]:
            if thread and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=5)

        logger.info("Disconnected from broker")

    def publish(self,
                data: Union[bytes, str],
                subject: str = 'default',
                expiry: Optional[float] = None,
                remove_after_read: bool = False) -> Dict[str, Any]:
        """
        Publish a payload on a subject.

        ``expiry`` is an absolute epoch timestamp in seconds. The result only
        confirms the broker accepted the message, not that anyone received it.
        """
        if isinstance(data, str):
            data = data.encode('utf-8')

        frame = (FrameBuilder(FrameType.PUBLISH)
                 .property('subject', subject)
                 .property('expiry', repr(float(expiry)) if expiry is not None else None)
                 .property('remove_after_read', format_bool(remove_after_read))
                 .body(data)
                 .sequence_number(self._get_next_sequence())
                 .build())

        response = self._send_and_wait(frame)
        result = self._result(response)
        if result['success']:
            result['message_id'] = response.properties.get('message_id')
        return result

    def subscribe(self,
                  handler: MessageHandler,
                  subject: str = 'default',
                  queue: Optional[str] = None) -> Dict[str, Any]:
        """
        Subscribe to a subject. With ``queue`` the client joins that
        load-balanced group; otherwise it receives every message (fan-out).
        """
        key = _handler_key(subject, queue)
        with self._lock:
            self._message_handlers.setdefault(key, []).append(handler)

        frame = (FrameBuilder(FrameType.SUBSCRIBE)
                 .property('subject', subject)
                 .property('queue', queue)
                 .sequence_number(self._get_next_sequence())
                 .build())

        response = self._send_and_wait(frame)
        result = self._result(response)
        if result['success']:
            result['subject'] = subject
            result['queue'] = queue
            queue_id = response.properties.get('queue_id')
            result['queue_id'] = int(queue_id) if queue_id else None
            logger.info(f"Subscribed to {key}")
        else:
            with self._lock:
                handlers = self._message_handlers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)
        return result

    def unsubscribe(self, subject: str = 'default', queue: Optional[str] = None) -> Dict[str, Any]:
        """Unsubscribe and drop local handlers for the subject (or subject and group)"""
        with self._lock:
            self._message_handlers.pop(_handler_key(subject, queue), None)

        frame = (FrameBuilder(FrameType.UNSUBSCRIBE)
                 .property('subject', subject)
                 .property('queue', queue)
                 .sequence_number(self._get_next_sequence())
                 .build())

        return self._result(self._send_and_wait(frame))

    def get_messages(self, subject: str = 'default') -> Dict[str, Any]:
        """Fetch the messages currently retained on a subject"""
        frame = (FrameBuilder(FrameType.GET_MESSAGES)
                 .property('subject', subject)
                 .sequence_number(self._get_next_sequence())
                 .build())

        response = self._send_and_wait(frame)
        result = self._result(response)
        if result['success']:
            entries = json.loads(response.body.decode('utf-8')) if response.body else []
            result['messages'] = [Message.from_dict(entry) for entry in entries]
            result['count'] = int(response.properties.get('count', len(entries)))
        return result

    def _result(self, response: Optional[Frame]) -> Dict[str, Any]:
        if response is None:
            return {'success': False, 'error': 'No response from server', 'error_kind': 'timeout'}
        if response.properties.get('status') != 'success':
            return {
                'success': False,
                'error': response.properties.get('error', 'unknown error'),
                'error_kind': response.properties.get('error_kind', 'internal'),
            }
        return {'success': True}

    def _send_and_wait(self, frame: Frame, timeout: Optional[float] = None) -> Optional[Frame]:
        """Send a request frame and wait for its response"""
        if not self._connected:
            raise RuntimeError("Not connected to broker")

        if timeout is None:
            timeout = self.request_timeout

        seq_num = frame.sequence_number

        event = threading.Event()
        self._response_handlers[seq_num] = event

        try:
            self._send_frame(frame)

            if event.wait(timeout):
                return self._responses.pop(seq_num, None)

            logger.warning(f"Timeout waiting for response to request {seq_num}")
            return None

        finally:
            self._response_handlers.pop(seq_num, None)
            self._responses.pop(seq_num, None)

    def _send_frame(self, frame: Frame) -> None:
        """Send a frame to the broker"""
        try:
            with self._send_lock:
                self._socket.sendall(frame.serialize())
        except OSError as e:
            logger.error(f"Failed to send frame: {e}")
            self._connected = False
            raise

    def _receive_worker(self) -> None:
        """Background worker for receiving frames"""
        while self._running and self._connected:
            try:
                frame = self._receive_frame()
                if frame:
                    self._handle_received_frame(frame)
            except (OSError, ValueError) as e:
                if self._running:
                    logger.error(f"Receive worker error: {e}")
                self._connected = False
                break

    def _receive_frame(self) -> Optional[Frame]:
        """Receive a frame from the broker; None on poll timeout"""
        self._socket.settimeout(1.0)
        try:
            header_data = self._recv_exact(4)
        except socket.timeout:
            return None

        # The rest of a started frame is read without the poll timeout
        self._socket.settimeout(None)
        total_length = struct.unpack('>I', header_data)[0]
        remaining_data = self._recv_exact(total_length - 4)
        return Frame.deserialize(header_data + remaining_data)

    def _recv_exact(self, length: int) -> bytes:
        """Receive exactly the specified number of bytes"""
        data = b''
        while len(data) < length:
            chunk = self._socket.recv(length - len(data))
            if not chunk:
                raise ConnectionError("Connection closed by broker")
            data += chunk
        return data

    def _handle_received_frame(self, frame: Frame) -> None:
        """Route a received frame to a waiting request or to message handlers"""
        if frame.frame_type == FrameType.MESSAGE:
            self._dispatch_message(frame)
            return

        if frame.frame_type == FrameType.SERVER_INFO:
            self.server_version = frame.properties.get('version')
            logger.info(f"{frame.properties.get('name', 'Broker')} server v{self.server_version}")
            return

        seq_num = frame.sequence_number
        event = self._response_handlers.get(seq_num)
        if event is not None:
            self._responses[seq_num] = frame
            event.set()
            return

        if frame.frame_type == FrameType.HEARTBEAT:
            logger.debug("Received heartbeat")
            return

        logger.debug(f"Unexpected {frame}")

    def _dispatch_message(self, frame: Frame) -> None:
        self.received_messages += 1
        queue_id = frame.properties.get('queue_id')
        delivery = Delivery(
            message=message_from_frame(frame),
            queue_id=int(queue_id) if queue_id else None,
            queue_name=frame.properties.get('queue_name')
        )

        with self._lock:
            handlers = list(self._message_handlers.get(_handler_key(delivery.subject, delivery.queue_name), []))

        if not handlers:
            logger.debug(f"No handler for message on {delivery.subject}")
        for handler in handlers:
            try:
                handler(delivery)
            except Exception as e:
                logger.error(f"Message handler error for {delivery.subject}: {e}")

    def _heartbeat_worker(self) -> None:
        """Background worker for sending heartbeats"""
        while self._running and self._connected:
            if self._stop_event.wait(self.heartbeat_interval):
                break
            if not (self._running and self._connected):
                break
            try:
                self._send_frame(create_heartbeat_frame(self._get_next_sequence()))
                logger.debug("Sent heartbeat to broker")
            except OSError as e:
                if self._running:
                    logger.error(f"Heartbeat worker error: {e}")
                break

    def _get_next_sequence(self) -> int:
        """Get next sequence number"""
        with self._lock:
            self._sequence_number += 1
            return self._sequence_number

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def print_delivery(delivery: Delivery) -> None:
    """Print a received message"""
    group = f" (queue: {delivery.queue_name})" if delivery.queue_name else ""
    print(f"[{delivery.subject}] {delivery.message.id}{group} {delivery.text()}")


def cli_main(argv=None):
    """CLI entry point"""
    parser = argparse.ArgumentParser(description='QueueBit client')
    parser.add_argument('--host', default='127.0.0.1', help='Broker host')
    parser.add_argument('--port', type=int, default=3333, help='Broker port')
    parser.add_argument('--client-id', help='Client ID')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    pub_parser = subparsers.add_parser('publish', help='Publish a message')
    pub_parser.add_argument('message', help='Message to publish')
    pub_parser.add_argument('--subject', default='default', help='Subject name')
    pub_parser.add_argument('--ttl', type=float, help='Seconds until the message expires')
    pub_parser.add_argument('--remove-after-read', action='store_true',
                            help='Deliver once and never replay')

    sub_parser = subparsers.add_parser('subscribe', help='Subscribe to a subject')
    sub_parser.add_argument('--subject', default='default', help='Subject name')
    sub_parser.add_argument('--queue', help='Join this load-balanced group')
    sub_parser.add_argument('--count', type=int, help='Max messages to receive')

    list_parser = subparsers.add_parser('messages', help='List retained messages')
    list_parser.add_argument('--subject', default='default', help='Subject name')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    logging.basicConfig(level=logging.WARNING)

    try:
        with BrokerClient(args.host, args.port, args.client_id) as client:

            if args.command == 'publish':
                expiry = time.time() + args.ttl if args.ttl else None
                result = client.publish(args.message, args.subject, expiry, args.remove_after_read)
                if result['success']:
                    print(f"Published {result['message_id']} to '{args.subject}'")
                else:
                    print(f"Failed to publish to '{args.subject}': {result['error']}")

            elif args.command == 'subscribe':
                done = threading.Event()
                message_count = 0

                def handle_delivery(delivery: Delivery):
                    nonlocal message_count
                    print_delivery(delivery)
                    message_count += 1
                    if args.count and message_count >= args.count:
                        done.set()

                result = client.subscribe(handle_delivery, args.subject, args.queue)
                if not result['success']:
                    print(f"Failed to subscribe to '{args.subject}': {result['error']}")
                    return

                print(f"Subscribed to {_handler_key(args.subject, args.queue)}")
                print("Press Ctrl+C to stop...")
                try:
                    while not done.wait(0.1):
                        pass
                except KeyboardInterrupt:
                    print("\nStopping...")
                client.unsubscribe(args.subject, args.queue)

            elif args.command == 'messages':
                result = client.get_messages(args.subject)
                if not result['success']:
                    print(f"Failed to list '{args.subject}': {result['error']}")
                    return
                print(f"{result['count']} retained on '{args.subject}'")
                for message in result['messages']:
                    print(f"  {message.id} {message.payload.decode('utf-8', errors='replace')}")

    except (OSError, RuntimeError) as e:
        print(f"Error: {e}")


if __name__ == '__main__':
    cli_main()
