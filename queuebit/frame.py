"""
Wire frame format implementation using Python's struct module for binary serialization.
Frames carry string properties (key-value pairs) and an opaque body.
"""
import json
import struct
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional
from enum import IntEnum

from .message import Message


class FrameType(IntEnum):
    """Frame types exchanged between broker and clients"""
    MESSAGE = 1         # broker -> consumer push
    ACK = 2             # response to any request
    HEARTBEAT = 3
    PUBLISH = 4
    SUBSCRIBE = 5
    UNSUBSCRIBE = 6
    GET_MESSAGES = 7
    SERVER_INFO = 8     # sent once on connect


class Frame:
    """
    Binary frame format:
    [4 bytes: total_length][4 bytes: frame_type][8 bytes: sequence_number]
    [8 bytes: timestamp_ms][4 bytes: properties_length][4 bytes: body_length]
    [properties_data][body_data]
    """

    HEADER_FORMAT = '>IIQQII'
    HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 32 bytes

    def __init__(self,
                 frame_type: FrameType,
                 body: bytes = b'',
                 properties: Optional[Dict[str, str]] = None,
                 sequence_number: int = 0,
                 timestamp: Optional[float] = None):
        self.frame_type = frame_type
        self.body = body
        self.properties = properties or {}
        self.sequence_number = sequence_number
        self.timestamp = timestamp or time.time()

    def serialize(self) -> bytes:
        """Serialize frame to binary format"""
        # Properties are key=value pairs, each terminated by \x00
        props_data = b''
        for key, value in self.properties.items():
            value = str(value)
            if '=' in key or '\x00' in key or '\x00' in value:
                raise ValueError(f"Invalid frame property {key!r}")
            props_data += f"{key}={value}".encode('utf-8') + b'\x00'

        props_length = len(props_data)
        body_length = len(self.body)
        total_length = self.HEADER_SIZE + props_length + body_length

        header = struct.pack(self.HEADER_FORMAT,
                             total_length,
                             self.frame_type,
                             self.sequence_number,
                             int(self.timestamp * 1000),
                             props_length,
                             body_length)

        return header + props_data + self.body

    @classmethod
    def deserialize(cls, data: bytes) -> 'Frame':
        """Deserialize binary data to a Frame, raising ValueError on bad input"""
        if len(data) < cls.HEADER_SIZE:
            raise ValueError("Invalid frame: too short")

        total_length, frame_type, seq_num, timestamp_ms, props_len, body_len = \
            struct.unpack(cls.HEADER_FORMAT, data[:cls.HEADER_SIZE])

        if len(data) != total_length:
            raise ValueError(f"Invalid frame length: expected {total_length}, got {len(data)}")
        if cls.HEADER_SIZE + props_len + body_len != total_length:
            raise ValueError("Invalid frame: section lengths do not add up")

        props_end = cls.HEADER_SIZE + props_len
        props_data = data[cls.HEADER_SIZE:props_end]

        properties = {}
        if props_data:
            props_str = props_data.decode('utf-8').rstrip('\x00')
            for prop in props_str.split('\x00'):
                if '=' in prop:
                    key, value = prop.split('=', 1)
                    properties[key] = value

        body = data[props_end:props_end + body_len]

        return cls(
            frame_type=FrameType(frame_type),
            body=body,
            properties=properties,
            sequence_number=seq_num,
            timestamp=timestamp_ms / 1000.0
        )

    def __str__(self) -> str:
        return (f"Frame(type={self.frame_type.name}, seq={self.sequence_number}, "
                f"props={len(self.properties)}, body_size={len(self.body)})")


class FrameBuilder:
    """Builder pattern for creating frames"""

    def __init__(self, frame_type: FrameType):
        self._frame_type = frame_type
        self._body = b''
        self._properties = {}
        self._sequence_number = 0

    def body(self, data: bytes) -> 'FrameBuilder':
        self._body = data
        return self

    def text_body(self, text: str) -> 'FrameBuilder':
        self._body = text.encode('utf-8')
        return self

    def property(self, key: str, value) -> 'FrameBuilder':
        if value is not None:
            self._properties[key] = str(value)
        return self

    def properties(self, props: Dict[str, str]) -> 'FrameBuilder':
        for key, value in props.items():
            self.property(key, value)
        return self

    def sequence_number(self, seq: int) -> 'FrameBuilder':
        self._sequence_number = seq
        return self

    def build(self) -> Frame:
        return Frame(
            frame_type=self._frame_type,
            body=self._body,
            properties=self._properties,
            sequence_number=self._sequence_number
        )


def format_bool(value: bool) -> str:
    return 'true' if value else 'false'


def parse_bool(value: Optional[str]) -> bool:
    """Parse a boolean frame property; absent means False"""
    if value is None:
        return False
    lowered = value.strip().lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no', ''):
        return False
    raise ValueError(f"Invalid boolean value {value!r}")


def parse_expiry(value: Optional[str]) -> Optional[float]:
    """
    Parse an absolute expiry: epoch seconds, or an ISO 8601 timestamp
    (naive timestamps are taken as UTC). Absent or empty means no expiry.
    """
    if value is None or value.strip() == '':
        return None
    try:
        return float(value)
    except ValueError:
        pass

    try:
        moment = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise ValueError(f"Invalid expiry {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def create_message_frame(message: Message,
                         group_id: Optional[int] = None,
                         group_name: Optional[str] = None) -> Frame:
    """Frame pushed to a consumer for a routed message"""
    return (FrameBuilder(FrameType.MESSAGE)
            .property('id', message.id)
            .property('subject', message.subject)
            .property('timestamp', repr(message.created_at))
            .property('expiry', repr(message.expires_at) if message.expires_at is not None else None)
            .property('remove_after_read', format_bool(message.remove_after_read))
            .property('queue_id', group_id)
            .property('queue_name', group_name)
            .body(message.payload)
            .build())


def message_from_frame(frame: Frame) -> Message:
    """Rebuild a Message from a MESSAGE frame received by a client"""
    props = frame.properties
    expiry = props.get('expiry')
    return Message(
        subject=props.get('subject', ''),
        payload=frame.body,
        id=props.get('id', ''),
        created_at=float(props.get('timestamp', frame.timestamp)),
        expires_at=float(expiry) if expiry is not None else None,
        remove_after_read=parse_bool(props.get('remove_after_read')),
    )


def create_ack_frame(sequence_number: int, **properties) -> Frame:
    """Successful response to a request"""
    return (FrameBuilder(FrameType.ACK)
            .property('status', 'success')
            .properties(properties)
            .sequence_number(sequence_number)
            .build())


def create_error_frame(error: str, kind: str, sequence_number: int = 0) -> Frame:
    """Error response to a request"""
    return (FrameBuilder(FrameType.ACK)
            .property('status', 'error')
            .property('error', error)
            .property('error_kind', kind)
            .sequence_number(sequence_number)
            .build())


def create_snapshot_frame(messages: List[Message], sequence_number: int) -> Frame:
    """Response to GET_MESSAGES: the retained snapshot as a JSON body"""
    body = json.dumps([m.to_dict() for m in messages]).encode('utf-8')
    return (FrameBuilder(FrameType.ACK)
            .property('status', 'success')
            .property('count', len(messages))
            .body(body)
            .sequence_number(sequence_number)
            .build())


def create_heartbeat_frame(sequence_number: int = 0) -> Frame:
    return FrameBuilder(FrameType.HEARTBEAT).sequence_number(sequence_number).build()
