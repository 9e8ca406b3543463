"""
Messages retained by the broker and routed to consumers.
"""
import base64
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def _new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Message:
    """A published payload; immutable once created"""
    subject: str
    payload: bytes
    id: str = field(default_factory=_new_message_id)
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None
    remove_after_read: bool = False

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True once ``expires_at`` is set and not later than ``now``"""
        if self.expires_at is None:
            return False
        if now is None:
            now = time.time()
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot representation returned by getMessages"""
        return {
            'id': self.id,
            'data': base64.b64encode(self.payload).decode('ascii'),
            'subject': self.subject,
            'timestamp': self.created_at,
            'expiry': self.expires_at,
            'remove_after_read': self.remove_after_read,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(
            subject=data['subject'],
            payload=base64.b64decode(data['data']),
            id=data['id'],
            created_at=data['timestamp'],
            expires_at=data.get('expiry'),
            remove_after_read=bool(data.get('remove_after_read', False)),
        )

    def __str__(self) -> str:
        return (f"Message(id={self.id}, subject={self.subject}, "
                f"size={len(self.payload)}, remove_after_read={self.remove_after_read})")
