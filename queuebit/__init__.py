"""
QueueBit: in-memory, subject-addressed message broker.
"""

from .message import Message
from .errors import BrokerError, CapacityExceeded, MalformedRequest
from .config import Config, get_config, initialize_config
from .frame import Frame, FrameType, FrameBuilder
from .store import MessageStore
from .subscription import SubscriptionRegistry, Group
from .scheduler import DeliveryScheduler
from .sweeper import ExpirySweeper
from .protocol import ProtocolHandler, ClientConnection, ProtocolError
from .broker import MessageBroker, VERSION

__version__ = VERSION
