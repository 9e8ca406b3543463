"""
Integration tests for the message broker system.
Runs a real server on an ephemeral port and talks to it through BrokerClient.
"""
import threading
import time
import unittest

from client import BrokerClient
from queuebit.config import Config
from server import BrokerServer


class Collector:
    """Message handler recording deliveries and signalling when enough arrived"""

    def __init__(self, expected=1):
        self.expected = expected
        self.deliveries = []
        self.done = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, delivery):
        with self._lock:
            self.deliveries.append(delivery)
            if len(self.deliveries) >= self.expected:
                self.done.set()

    def texts(self):
        with self._lock:
            return [d.text() for d in self.deliveries]


class TestClientServerIntegration(unittest.TestCase):
    """End-to-end tests over TCP"""

    def setUp(self):
        """Start a server on a free port"""
        config = Config()
        config.set('broker.max_queue_size', 3)
        config.set('broker.expiry_sweep_interval_ms', 50)

        self.server = BrokerServer(('127.0.0.1', 0), config=config)
        self.port = self.server.server_address[1]
        self.server_thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.server_thread.start()

        self.clients = []

    def tearDown(self):
        """Disconnect clients and stop the server"""
        for client in self.clients:
            client.disconnect()
        self.server.shutdown()
        self.server.server_close()
        self.server_thread.join(timeout=5)

    def connect(self, name):
        client = BrokerClient('127.0.0.1', self.port, name)
        client.connect()
        self.clients.append(client)
        return client

    def test_server_info_and_publish(self):
        """Test the greeting and a publish acknowledgement"""
        publisher = self.connect("publisher")

        result = publisher.publish("hello", subject="greetings")

        self.assertTrue(result['success'])
        self.assertTrue(result['message_id'])
        self.assertEqual(publisher.server_version, self.server.broker.get_broker_stats()['version'])

    def test_fanout_end_to_end(self):
        """Test two subscribers each receive every message in order"""
        first, second = Collector(2), Collector(2)
        self.connect("reader_1").subscribe(first, subject="news")
        self.connect("reader_2").subscribe(second, subject="news")
        publisher = self.connect("publisher")

        publisher.publish("m1", subject="news")
        publisher.publish("m2", subject="news")

        self.assertTrue(first.done.wait(5))
        self.assertTrue(second.done.wait(5))
        self.assertEqual(first.texts(), ["m1", "m2"])
        self.assertEqual(second.texts(), ["m1", "m2"])

    def test_group_end_to_end(self):
        """Test group members split the work and see the group name"""
        workers = [Collector(1), Collector(1)]
        results = [self.connect(f"worker_{i}").subscribe(w, subject="jobs", queue="workers")
                   for i, w in enumerate(workers)]
        publisher = self.connect("publisher")

        self.assertEqual(results[0]['queue_id'], results[1]['queue_id'])

        publisher.publish("t1", subject="jobs")
        publisher.publish("t2", subject="jobs")

        for worker in workers:
            self.assertTrue(worker.done.wait(5))
        self.assertEqual(sorted(workers[0].texts() + workers[1].texts()), ["t1", "t2"])
        self.assertEqual(workers[0].deliveries[0].queue_name, "workers")
        self.assertEqual(publisher.get_messages("jobs")['count'], 0)

    def test_late_subscriber_replay(self):
        """Test a late fan-out subscriber receives the retained backlog"""
        publisher = self.connect("publisher")
        publisher.publish("old", subject="history")
        publisher.publish("once", subject="history", remove_after_read=True)

        late = Collector(1)
        self.connect("late").subscribe(late, subject="history")

        self.assertTrue(late.done.wait(5))
        time.sleep(0.2)
        self.assertEqual(late.texts(), ["old"])

    def test_get_messages_and_capacity(self):
        """Test the retained snapshot and the capacity error"""
        publisher = self.connect("publisher")
        for i in range(3):
            self.assertTrue(publisher.publish(f"m{i}", subject="full")['success'])

        rejected = publisher.publish("overflow", subject="full")
        self.assertFalse(rejected['success'])
        self.assertEqual(rejected['error_kind'], 'capacity_exceeded')

        snapshot = publisher.get_messages("full")
        self.assertEqual(snapshot['count'], 3)
        self.assertEqual([m.payload for m in snapshot['messages']], [b"m0", b"m1", b"m2"])

    def test_expiry_end_to_end(self):
        """Test an expired message leaves the snapshot"""
        publisher = self.connect("publisher")
        publisher.publish("short", subject="ttl", expiry=time.time() + 0.2)
        self.assertEqual(publisher.get_messages("ttl")['count'], 1)

        deadline = time.time() + 5
        while publisher.get_messages("ttl")['count'] and time.time() < deadline:
            time.sleep(0.05)

        self.assertEqual(publisher.get_messages("ttl")['count'], 0)

    def test_disconnect_removes_group_member(self):
        """Test a departed worker no longer receives group messages"""
        stayer, leaver = Collector(2), Collector(1)
        self.connect("stayer").subscribe(stayer, subject="jobs", queue="workers")
        leaving_client = self.connect("leaver")
        leaving_client.subscribe(leaver, subject="jobs", queue="workers")

        leaving_client.disconnect()
        group = self.server.broker.registry.get_group("jobs", "workers")
        deadline = time.time() + 5
        while len(group.members) > 1 and time.time() < deadline:
            time.sleep(0.05)

        publisher = self.connect("publisher")
        publisher.publish("t1", subject="jobs")
        publisher.publish("t2", subject="jobs")

        self.assertTrue(stayer.done.wait(5))
        self.assertEqual(stayer.texts(), ["t1", "t2"])
        self.assertEqual(leaver.deliveries, [])


if __name__ == '__main__':
    unittest.main()
