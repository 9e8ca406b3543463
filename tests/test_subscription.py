"""
Unit tests for the subscription module.
Tests fan-out registration, group membership and round-robin selection.
"""
import unittest

from queuebit.subscription import Group, SubjectSubscriptions, SubscriptionRegistry


class Consumer:
    """Stand-in consumer handle; compared by identity"""

    def __init__(self, name):
        self.name = name

    def __eq__(self, other):
        # Equal names must not make two handles interchangeable
        return isinstance(other, Consumer) and self.name == other.name

    __hash__ = object.__hash__

    def __repr__(self):
        return self.name


class TestGroup(unittest.TestCase):
    """Test cases for Group rotation"""

    def setUp(self):
        self.a, self.b, self.c = Consumer("A"), Consumer("B"), Consumer("C")
        self.group = Group(group_id=1, name="workers", subject="jobs")
        for consumer in (self.a, self.b, self.c):
            self.group.add_member(consumer)

    def test_round_robin(self):
        """Test members are picked in order and wrap around"""
        picked = [self.group.next_member() for _ in range(6)]
        self.assertEqual(picked, [self.a, self.b, self.c, self.a, self.b, self.c])

    def test_duplicate_member_ignored(self):
        """Test a consumer is only added once"""
        self.assertFalse(self.group.add_member(self.a))
        self.assertEqual(len(self.group.members), 3)

    def test_identity_not_equality(self):
        """Test membership uses identity"""
        lookalike = Consumer("A")
        self.assertTrue(self.group.add_member(lookalike))
        self.assertFalse(self.group.remove_member(Consumer("Z")))
        self.assertEqual(len(self.group.members), 4)

    def test_remove_before_cursor_keeps_next_member(self):
        """Test removing an earlier member does not skip anyone"""
        self.assertIs(self.group.next_member(), self.a)
        self.group.remove_member(self.a)
        self.assertEqual([self.group.next_member() for _ in range(3)], [self.b, self.c, self.b])

    def test_remove_current_member_skips_it(self):
        """Test removing the member at the cursor moves on to the next one"""
        self.assertIs(self.group.next_member(), self.a)
        self.group.remove_member(self.b)
        self.assertEqual([self.group.next_member() for _ in range(3)], [self.c, self.a, self.c])

    def test_remove_last_member_wraps(self):
        """Test the cursor wraps when the tail member leaves"""
        self.group.next_member()
        self.group.next_member()
        self.group.remove_member(self.c)
        self.assertIs(self.group.next_member(), self.a)

    def test_empty_group(self):
        """Test an empty group yields nobody"""
        for consumer in (self.a, self.b, self.c):
            self.group.remove_member(consumer)
        self.assertIsNone(self.group.next_member())


class TestSubjectSubscriptions(unittest.TestCase):
    """Test cases for rotation across groups"""

    def test_rotates_across_non_empty_groups(self):
        """Test groups take turns and empty groups are skipped"""
        state = SubjectSubscriptions(subject="jobs")
        a, b, c = Consumer("A"), Consumer("B"), Consumer("C")
        first = Group(1, "first", "jobs", [a, b])
        empty = Group(2, "empty", "jobs")
        second = Group(3, "second", "jobs", [c])
        state.groups = {"first": first, "empty": empty, "second": second}

        picks = [state.next_group_member() for _ in range(4)]

        self.assertEqual([(g.name, m) for g, m in picks],
                         [("first", a), ("second", c), ("first", b), ("second", c)])

    def test_no_active_groups(self):
        """Test nothing is selected without members"""
        state = SubjectSubscriptions(subject="jobs")
        state.groups["idle"] = Group(1, "idle", "jobs")
        self.assertIsNone(state.next_group_member())


class TestSubscriptionRegistry(unittest.TestCase):
    """Test cases for SubscriptionRegistry"""

    def setUp(self):
        self.registry = SubscriptionRegistry()
        self.a, self.b = Consumer("A"), Consumer("B")

    def test_fanout_subscribe_once(self):
        """Test fan-out subscribers are registered once, in join order"""
        self.assertTrue(self.registry.subscribe_fanout("news", self.a))
        self.assertTrue(self.registry.subscribe_fanout("news", self.b))
        self.assertFalse(self.registry.subscribe_fanout("news", self.a))

        self.assertEqual(self.registry.fanout_subscribers("news"), [self.a, self.b])
        self.assertEqual(self.registry.fanout_subscribers("other"), [])

    def test_group_created_with_unique_ids(self):
        """Test groups get ids on creation and are reused by name"""
        g1 = self.registry.subscribe_group("jobs", "workers", self.a)
        g2 = self.registry.subscribe_group("jobs", "workers", self.b)
        g3 = self.registry.subscribe_group("jobs", "auditors", self.a)
        g4 = self.registry.subscribe_group("other", "workers", self.a)

        self.assertIs(g1, g2)
        self.assertEqual(g1.members, [self.a, self.b])
        self.assertEqual(len({g1.group_id, g3.group_id, g4.group_id}), 3)
        self.assertIs(self.registry.get_group("jobs", "workers"), g1)

    def test_unsubscribe_fanout_and_group(self):
        """Test unsubscribe targets the fan-out set or the named group"""
        self.registry.subscribe_fanout("jobs", self.a)
        group = self.registry.subscribe_group("jobs", "workers", self.a)

        self.assertTrue(self.registry.unsubscribe("jobs", self.a, "workers"))
        self.assertEqual(group.members, [])
        self.assertEqual(self.registry.fanout_subscribers("jobs"), [self.a])

        self.assertTrue(self.registry.unsubscribe("jobs", self.a))
        self.assertEqual(self.registry.fanout_subscribers("jobs"), [])

    def test_unsubscribe_unknown_is_noop(self):
        """Test unsubscribing unknown registrations does nothing"""
        self.assertFalse(self.registry.unsubscribe("nowhere", self.a))
        self.registry.subscribe_fanout("news", self.b)
        self.assertFalse(self.registry.unsubscribe("news", self.a))
        self.assertFalse(self.registry.unsubscribe("news", self.a, "missing"))

    def test_empty_group_persists(self):
        """Test an emptied group keeps its id for later members"""
        group = self.registry.subscribe_group("jobs", "workers", self.a)
        self.registry.unsubscribe("jobs", self.a, "workers")

        again = self.registry.subscribe_group("jobs", "workers", self.b)
        self.assertIs(again, group)

    def test_remove_consumer_everywhere(self):
        """Test a departing consumer is removed from all subjects and groups"""
        self.registry.subscribe_fanout("news", self.a)
        self.registry.subscribe_fanout("sports", self.a)
        self.registry.subscribe_fanout("sports", self.b)
        workers = self.registry.subscribe_group("jobs", "workers", self.a)
        self.registry.subscribe_group("jobs", "workers", self.b)

        self.assertEqual(self.registry.remove_consumer(self.a), 3)
        self.assertEqual(self.registry.fanout_subscribers("news"), [])
        self.assertEqual(self.registry.fanout_subscribers("sports"), [self.b])
        self.assertEqual(workers.members, [self.b])

        # Repeated calls are harmless
        self.assertEqual(self.registry.remove_consumer(self.a), 0)

    def test_next_group_member(self):
        """Test selection through the registry"""
        self.assertIsNone(self.registry.next_group_member("jobs"))

        group = self.registry.subscribe_group("jobs", "workers", self.a)
        self.registry.subscribe_group("jobs", "workers", self.b)

        self.assertEqual(self.registry.next_group_member("jobs"), (group, self.a))
        self.assertEqual(self.registry.next_group_member("jobs"), (group, self.b))

    def test_subject_stats(self):
        """Test subscription statistics"""
        self.registry.subscribe_fanout("jobs", self.a)
        group = self.registry.subscribe_group("jobs", "workers", self.b)

        stats = self.registry.get_subject_stats("jobs")
        self.assertEqual(stats['subscribers'], 1)
        self.assertEqual(stats['groups'][0]['id'], group.group_id)
        self.assertEqual(stats['groups'][0]['members'], 1)
        self.assertIsNone(self.registry.get_subject_stats("unknown"))


if __name__ == '__main__':
    unittest.main()
