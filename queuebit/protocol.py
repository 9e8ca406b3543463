"""
Custom TCP protocol implementation for the message broker.
Handles persistent connections, heartbeats, and frame dispatch.
"""
import socket
import struct
import threading
import logging
import time
from typing import Callable, Dict, Optional, Any
from enum import IntEnum

from .frame import Frame, FrameType, create_error_frame, create_heartbeat_frame
from .config import Config, get_config
from .errors import BrokerError, MalformedRequest


logger = logging.getLogger(__name__)

FrameHandler = Callable[['ClientConnection', Frame], Optional[Frame]]


class ProtocolError(Exception):
    """Protocol-related errors"""
    pass


class ConnectionState(IntEnum):
    """Connection states"""
    CONNECTING = 1
    CONNECTED = 2
    DISCONNECTING = 3
    DISCONNECTED = 4


class ClientConnection:
    """
    A client connection speaking the framed TCP protocol.

    Also serves as the consumer handle registered with the broker, so it is
    hashed and compared by identity.
    """

    def __init__(self, socket: socket.socket, address: tuple, connection_id: str,
                 config: Optional[Config] = None):
        self.socket = socket
        self.address = address
        self.connection_id = connection_id
        self.state = ConnectionState.CONNECTED

        self.created_at = time.time()
        self.last_heartbeat = time.time()
        self.last_activity = time.time()

        self._lock = threading.RLock()
        self._send_lock = threading.Lock()

        # Protocol settings
        self.config = config or get_config()
        self.connection_timeout = self.config.get('server.connection_timeout', 300)
        self.max_frame_size = self.config.get('server.max_frame_size', 100 * 1000 * 1000)

        logger.info(f"New client connection {connection_id} from {address}")

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def send_frame(self, frame: Frame) -> None:
        """Send a frame to the client"""
        if self.state != ConnectionState.CONNECTED:
            raise ProtocolError(f"Cannot send frame: connection {self.connection_id} not connected")

        data = frame.serialize()
        try:
            with self._send_lock:
                self.socket.sendall(data)
                self.last_activity = time.time()
        except OSError as e:
            logger.error(f"Failed to send frame to {self.connection_id}: {e}")
            self.state = ConnectionState.DISCONNECTED
            raise ProtocolError(f"Send failed: {e}")

    def receive_frame(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Receive a frame from the client.

        Returns None on timeout or when the peer has gone away. Raises
        MalformedRequest when a complete frame arrived but could not be decoded.
        """
        if self.state != ConnectionState.CONNECTED:
            return None

        try:
            if timeout is not None:
                self.socket.settimeout(timeout)

            # The first 4 bytes carry the total frame length
            header_data = self._recv_exact(4)
            if not header_data:
                # Peer closed the connection
                self.state = ConnectionState.DISCONNECTED
                return None

            # Once a frame has started, read the rest of it without the poll timeout
            if timeout is not None:
                self.socket.settimeout(None)

            total_length = struct.unpack('>I', header_data)[0]
            if total_length < Frame.HEADER_SIZE or total_length > self.max_frame_size:
                logger.error(f"Invalid frame length {total_length} from {self.connection_id}")
                self.state = ConnectionState.DISCONNECTED
                return None

            remaining_data = self._recv_exact(total_length - 4)
            if not remaining_data:
                self.state = ConnectionState.DISCONNECTED
                return None

            self.last_activity = time.time()
            try:
                return Frame.deserialize(header_data + remaining_data)
            except ValueError as e:
                raise MalformedRequest(f"Undecodable frame: {e}")

        except socket.timeout:
            return None
        except OSError as e:
            logger.error(f"Failed to receive frame from {self.connection_id}: {e}")
            self.state = ConnectionState.DISCONNECTED
            return None
        finally:
            try:
                self.socket.settimeout(None)
            except OSError:
                pass

    def _recv_exact(self, length: int) -> Optional[bytes]:
        """Receive exactly the specified number of bytes"""
        data = b''
        while len(data) < length:
            chunk = self.socket.recv(length - len(data))
            if not chunk:
                return None
            data += chunk
        return data

    def send_heartbeat(self) -> None:
        """Send heartbeat frame"""
        try:
            self.send_frame(create_heartbeat_frame())
            self.last_heartbeat = time.time()
        except ProtocolError as e:
            logger.warning(f"Failed to send heartbeat to {self.connection_id}: {e}")

    def is_alive(self) -> bool:
        """Check if connection is still alive"""
        if self.state != ConnectionState.CONNECTED:
            return False

        return (time.time() - self.last_activity) < self.connection_timeout

    def close(self) -> None:
        """Close the connection"""
        with self._lock:
            if self.state == ConnectionState.DISCONNECTED:
                return

            self.state = ConnectionState.DISCONNECTING

            try:
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self.socket.close()
            except OSError:
                pass

            self.state = ConnectionState.DISCONNECTED
            logger.info(f"Closed connection {self.connection_id}")

    def __repr__(self) -> str:
        return f"ClientConnection({self.connection_id}, {self.address})"


class ProtocolHandler:
    """Handles the custom TCP protocol"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self._connections: Dict[str, ClientConnection] = {}
        self._connection_counter = 0
        self._lock = threading.RLock()

        # Frame handlers
        self._frame_handlers: Dict[FrameType, FrameHandler] = {}

        # Heartbeat thread
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

    def start(self) -> None:
        """Start the protocol handler"""
        with self._lock:
            if self._running:
                return

            self._running = True
            self._stop_event.clear()
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_worker,
                daemon=True,
                name="ProtocolHeartbeat"
            )
            self._heartbeat_thread.start()

            logger.info("Protocol handler started")

    def stop(self) -> None:
        """Stop the protocol handler"""
        with self._lock:
            self._running = False
            self._stop_event.set()

            # Close all connections
            for connection in list(self._connections.values()):
                connection.close()

            self._connections.clear()

        if self._heartbeat_thread and self._heartbeat_thread.is_alive():
            self._heartbeat_thread.join(timeout=5)

        logger.info("Protocol handler stopped")

    def register_handler(self, frame_type: FrameType, handler: FrameHandler) -> None:
        """Register a frame handler"""
        self._frame_handlers[frame_type] = handler
        logger.debug(f"Registered handler for {frame_type.name}")

    def add_connection(self, client_socket: socket.socket, address: tuple) -> ClientConnection:
        """Add a new client connection"""
        with self._lock:
            connection_id = f"conn_{self._connection_counter}"
            self._connection_counter += 1

            connection = ClientConnection(client_socket, address, connection_id, self.config)
            self._connections[connection_id] = connection

            return connection

    def remove_connection(self, connection_id: str) -> Optional[ClientConnection]:
        """Remove and close a client connection"""
        with self._lock:
            connection = self._connections.pop(connection_id, None)
        if connection is not None:
            connection.close()
            logger.info(f"Removed connection {connection_id}")
        return connection

    def get_connection(self, connection_id: str) -> Optional[ClientConnection]:
        """Get a connection by ID"""
        with self._lock:
            return self._connections.get(connection_id)

    def get_connection_count(self) -> int:
        """Get number of active connections"""
        with self._lock:
            return len(self._connections)

    def handle_frame(self, connection: ClientConnection, frame: Frame) -> Optional[Frame]:
        """Dispatch an incoming request frame and build its response"""
        logger.debug(f"Handling {frame.frame_type.name} from {connection.connection_id}")

        handler = self._frame_handlers.get(frame.frame_type)
        if handler is None:
            logger.warning(f"No handler for frame type {frame.frame_type.name}")
            return create_error_frame("Unknown request type", MalformedRequest.kind, frame.sequence_number)

        try:
            return handler(connection, frame)
        except BrokerError as e:
            logger.info(f"{frame.frame_type.name} from {connection.connection_id} rejected: {e}")
            return create_error_frame(str(e), e.kind, frame.sequence_number)
        except Exception as e:
            logger.error(f"Handler error for {frame.frame_type.name}: {e}")
            return create_error_frame(str(e), BrokerError.kind, frame.sequence_number)

    def _heartbeat_worker(self) -> None:
        """Background worker for heartbeats and connection cleanup"""
        interval = self.config.get('server.heartbeat_interval', 25)
        while not self._stop_event.wait(interval):
            try:
                self._send_heartbeats()
                self._cleanup_dead_connections()
            except Exception as e:
                logger.error(f"Heartbeat worker error: {e}")

    def _send_heartbeats(self) -> None:
        """Send heartbeats to all connections"""
        with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            connection.send_heartbeat()

    def _cleanup_dead_connections(self) -> None:
        """Close connections that timed out; their request threads finish the cleanup"""
        with self._lock:
            dead_connections = [conn_id for conn_id, conn in self._connections.items()
                                if not conn.is_alive()]

        for connection_id in dead_connections:
            self.remove_connection(connection_id)
            logger.info(f"Cleaned up dead connection {connection_id}")

    def get_stats(self) -> Dict[str, Any]:
        """Get protocol statistics"""
        with self._lock:
            connections = list(self._connections.values())

            return {
                'active_connections': len(connections),
                'total_connections': self._connection_counter,
                'connections': [
                    {
                        'id': conn.connection_id,
                        'address': conn.address,
                        'created_at': conn.created_at,
                        'last_activity': conn.last_activity,
                        'state': conn.state.name
                    }
                    for conn in connections
                ]
            }
