"""
Broker error kinds reported back to clients.
"""


class BrokerError(Exception):
    """Base class for errors returned to the requesting client"""

    kind = 'internal'


class CapacityExceeded(BrokerError):
    """Publish rejected because the subject's retained queue is full"""

    kind = 'capacity_exceeded'

    def __init__(self, subject: str, max_queue_size: int):
        super().__init__("Queue is full")
        self.subject = subject
        self.max_queue_size = max_queue_size


class MalformedRequest(BrokerError):
    """Request could not be interpreted; no state was changed"""

    kind = 'malformed_request'
