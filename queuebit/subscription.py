"""
Subscription management for the message broker.
Tracks fan-out subscribers and load-balanced groups per subject and provides
the round-robin selection used by the delivery scheduler.

Consumers are opaque handles compared by identity (normally a ClientConnection).
"""
import threading
import time
import logging
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)


def _index_of(consumers: List[Any], consumer: Any) -> int:
    for index, candidate in enumerate(consumers):
        if candidate is consumer:
            return index
    return -1


@dataclass(eq=False)
class Group:
    """A named load-balanced group; each message goes to exactly one member"""
    group_id: int
    name: str
    subject: str
    members: List[Any] = field(default_factory=list)
    cursor: int = 0
    created_at: float = field(default_factory=time.time)

    def add_member(self, consumer: Any) -> bool:
        """Append a member; returns False if it is already in the group"""
        if _index_of(self.members, consumer) >= 0:
            return False
        self.members.append(consumer)
        logger.info(f"Added member to group {self.name} ({self.group_id}) on {self.subject}")
        return True

    def remove_member(self, consumer: Any) -> bool:
        """Remove a member, keeping the rotation pointed at the same next member"""
        index = _index_of(self.members, consumer)
        if index < 0:
            return False
        del self.members[index]
        if index < self.cursor:
            self.cursor -= 1
        logger.info(f"Removed member from group {self.name} ({self.group_id}) on {self.subject}")
        return True

    def next_member(self) -> Optional[Any]:
        """Get the member at the cursor and advance it round-robin"""
        if not self.members:
            return None

        index = self.cursor % len(self.members)
        self.cursor = (index + 1) % len(self.members)
        return self.members[index]


@dataclass
class SubjectSubscriptions:
    """Fan-out subscribers and groups registered on one subject"""
    subject: str
    subscribers: List[Any] = field(default_factory=list)
    groups: Dict[str, Group] = field(default_factory=dict)
    group_cursor: int = 0

    def active_groups(self) -> List[Group]:
        """Groups with at least one member, in creation order"""
        return [g for g in self.groups.values() if g.members]

    def next_group_member(self) -> Optional[Tuple[Group, Any]]:
        """Rotate across non-empty groups, then within the chosen group"""
        active = self.active_groups()
        if not active:
            return None

        group = active[self.group_cursor % len(active)]
        self.group_cursor = (self.group_cursor + 1) % len(active)
        return group, group.next_member()


class SubscriptionRegistry:
    """Manages fan-out and group subscriptions for all subjects"""

    def __init__(self):
        self._subjects: Dict[str, SubjectSubscriptions] = {}
        self._group_counter = 0
        self._lock = threading.RLock()

    def _subject(self, subject: str) -> SubjectSubscriptions:
        state = self._subjects.get(subject)
        if state is None:
            state = SubjectSubscriptions(subject=subject)
            self._subjects[subject] = state
        return state

    def subscribe_fanout(self, subject: str, consumer: Any) -> bool:
        """Add a fan-out subscriber; returns False if it was already subscribed"""
        with self._lock:
            state = self._subject(subject)
            if _index_of(state.subscribers, consumer) >= 0:
                return False
            state.subscribers.append(consumer)
            logger.info(f"Added fan-out subscriber on {subject} ({len(state.subscribers)} total)")
            return True

    def subscribe_group(self, subject: str, group_name: str, consumer: Any) -> Group:
        """Join a group, creating it with a new id on first use"""
        with self._lock:
            state = self._subject(subject)
            group = state.groups.get(group_name)
            if group is None:
                self._group_counter += 1
                group = Group(group_id=self._group_counter, name=group_name, subject=subject)
                state.groups[group_name] = group
                logger.info(f"Created group {group_name} ({group.group_id}) on {subject}")
            group.add_member(consumer)
            return group

    def unsubscribe(self, subject: str, consumer: Any, group_name: Optional[str] = None) -> bool:
        """Remove one registration; unknown subjects, groups or consumers are ignored"""
        with self._lock:
            state = self._subjects.get(subject)
            if state is None:
                return False

            if group_name is not None:
                group = state.groups.get(group_name)
                return group is not None and group.remove_member(consumer)

            index = _index_of(state.subscribers, consumer)
            if index < 0:
                return False
            del state.subscribers[index]
            logger.info(f"Removed fan-out subscriber on {subject}")
            return True

    def remove_consumer(self, consumer: Any) -> int:
        """Remove a consumer from every subject and group; returns registrations removed"""
        removed = 0
        with self._lock:
            for state in self._subjects.values():
                index = _index_of(state.subscribers, consumer)
                if index >= 0:
                    del state.subscribers[index]
                    removed += 1
                for group in state.groups.values():
                    if group.remove_member(consumer):
                        removed += 1
        return removed

    def next_group_member(self, subject: str) -> Optional[Tuple[Group, Any]]:
        with self._lock:
            state = self._subjects.get(subject)
            if state is None:
                return None
            return state.next_group_member()

    def fanout_subscribers(self, subject: str) -> List[Any]:
        """Copy of the subject's fan-out subscribers in join order"""
        with self._lock:
            state = self._subjects.get(subject)
            return list(state.subscribers) if state else []

    def get_group(self, subject: str, group_name: str) -> Optional[Group]:
        with self._lock:
            state = self._subjects.get(subject)
            return state.groups.get(group_name) if state else None

    def list_subjects(self) -> List[str]:
        with self._lock:
            return list(self._subjects.keys())

    def get_subject_stats(self, subject: str) -> Optional[Dict]:
        """Get statistics for a subject's subscriptions"""
        with self._lock:
            state = self._subjects.get(subject)
            if state is None:
                return None

            return {
                'subject': subject,
                'subscribers': len(state.subscribers),
                'groups': [
                    {
                        'id': g.group_id,
                        'name': g.name,
                        'members': len(g.members),
                        'created_at': g.created_at,
                    }
                    for g in state.groups.values()
                ]
            }
