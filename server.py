"""
TCP Server implementation for the message broker.
"""
import argparse
import logging
import signal
import sys
from socketserver import ThreadingTCPServer, BaseRequestHandler
from typing import Optional

from queuebit.broker import MessageBroker
from queuebit.config import Config, initialize_config
from queuebit.errors import MalformedRequest
from queuebit.frame import create_error_frame
from queuebit.protocol import ProtocolError


logger = logging.getLogger(__name__)


class BrokerRequestHandler(BaseRequestHandler):
    """Request handler for broker connections"""
    _broker: Optional[MessageBroker] = None
    connection = None

    def setup(self):
        """Register the connection with the broker"""
        self._broker = self.server.broker
        self.connection = self._broker.add_client_connection(
            self.request,
            self.client_address
        )
        logger.info(f"Client connected: {self.client_address}")

    def handle(self):
        """Serve requests until the client goes away"""
        try:
            while True:
                try:
                    frame = self.connection.receive_frame(timeout=1.0)
                except MalformedRequest as e:
                    logger.warning(f"Malformed frame from {self.client_address}: {e}")
                    self.connection.send_frame(create_error_frame(str(e), e.kind))
                    continue

                if frame is None:
                    if not self.connection.is_alive():
                        break
                    continue

                response = self._broker.protocol_handler.handle_frame(self.connection, frame)

                if response is not None:
                    self.connection.send_frame(response)

        except ProtocolError as e:
            logger.info(f"Connection to {self.client_address} lost: {e}")
        except Exception as e:
            logger.error(f"Error handling client {self.client_address}: {e}")

    def finish(self):
        """Drop the connection's subscriptions"""
        if self.connection is None:
            return
        try:
            self._broker.remove_client_connection(self.connection)
        except Exception as e:
            logger.error(f"Error cleaning up connection: {e}")

        logger.info(f"Client disconnected: {self.client_address}")


class BrokerServer(ThreadingTCPServer):
    """TCP Server for the message broker"""

    allow_reuse_address = True
    daemon_threads = True  # Allow server to exit even if threads are running

    def __init__(self, server_address, RequestHandlerClass=BrokerRequestHandler, config: Optional[Config] = None):
        self.broker = MessageBroker(config)  # Initialize broker before calling super()
        super().__init__(server_address, RequestHandlerClass)

    def server_activate(self):
        """Start the broker when server activates"""
        super().server_activate()
        self.broker.start()
        logger.info(f"Broker server listening on {self.server_address}")

    def server_close(self):
        """Stop the broker when server closes"""
        logger.info("Shutting down broker server...")
        if hasattr(self, 'broker'):
            self.broker.stop()
        super().server_close()


def configure_logging(config: Config) -> None:
    """Apply logging settings from configuration"""
    handlers = [logging.StreamHandler()]
    log_file = config.get('logging.file')
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO),
        format=config.get('logging.format'),
        handlers=handlers
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='QueueBit message broker server')
    parser.add_argument('--config', help='Path to a JSON configuration file')
    parser.add_argument('--host', help='Interface to bind')
    parser.add_argument('--port', type=int, help='Port to listen on')
    parser.add_argument('--max-queue', type=int, dest='max_queue',
                        help='Retained messages allowed per subject')
    return parser.parse_args(argv)


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main(argv=None):
    """Main server entry point"""
    args = parse_args(argv)
    config = initialize_config(args.config)

    # Command line wins over file and environment
    if args.host:
        config.set('server.host', args.host)
    if args.port is not None:
        config.set('server.port', args.port)
    if args.max_queue is not None:
        config.set('broker.max_queue_size', args.max_queue)

    configure_logging(config)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = config.get('server.host')
    port = config.get('server.port')

    logger.info(f"Starting QueueBit server on {host}:{port}")
    logger.info(f"Max queue size: {config.get('broker.max_queue_size')}, "
                f"delivery batch: {config.get('broker.delivery_batch_size')}")

    server = BrokerServer((host, port), BrokerRequestHandler, config)

    try:
        logger.info("Press Ctrl+C to stop the server")
        server.serve_forever()

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        server.server_close()
        logger.info("Server stopped")


if __name__ == '__main__':
    main()
