"""
Walk through the broker's delivery modes against an in-process server.
"""
import threading
import time

from client import BrokerClient, Delivery
from server import BrokerServer


HOST = '127.0.0.1'


def demo_fanout(port: int):
    """Every fan-out subscriber receives every message"""
    print("1. Fan-out: both subscribers receive each message")

    with BrokerClient(HOST, port, "reader_1") as reader1, \
            BrokerClient(HOST, port, "reader_2") as reader2, \
            BrokerClient(HOST, port, "publisher") as publisher:

        reader1.subscribe(lambda d: print(f"   reader 1 got: {d.text()}"), subject="news")
        reader2.subscribe(lambda d: print(f"   reader 2 got: {d.text()}"), subject="news")

        for i in range(2):
            publisher.publish(f"headline {i + 1}", subject="news")
        time.sleep(0.5)


def demo_load_balancing(port: int):
    """Members of one group share the work round-robin"""
    print("\n2. Load balancing: 6 jobs over 3 workers, 2 each")

    counts = {}
    lock = threading.Lock()

    def worker(name):
        def handle(delivery: Delivery):
            with lock:
                counts[name] = counts.get(name, 0) + 1
            print(f"   {name} got: {delivery.text()} (queue {delivery.queue_name})")
        return handle

    clients = [BrokerClient(HOST, port, f"worker_{i + 1}") for i in range(3)]
    try:
        for index, client in enumerate(clients):
            client.connect()
            client.subscribe(worker(f"worker {index + 1}"), subject="jobs", queue="workers")

        with BrokerClient(HOST, port, "dispatcher") as dispatcher:
            for i in range(6):
                dispatcher.publish(f"task-{i + 1}", subject="jobs")
            time.sleep(0.5)
    finally:
        for client in clients:
            client.disconnect()

    print(f"   per worker: {counts}")


def demo_remove_after_read(port: int):
    """A remove-after-read message is never replayed to late subscribers"""
    print("\n3. Remove after read")

    with BrokerClient(HOST, port, "publisher") as publisher:
        publisher.publish("one-time message", subject="ephemeral", remove_after_read=True)
        publisher.publish("kept message", subject="ephemeral")
        time.sleep(0.3)

        with BrokerClient(HOST, port, "late_reader") as late:
            late.subscribe(lambda d: print(f"   late subscriber got: {d.text()}"), subject="ephemeral")
            time.sleep(0.3)


def demo_expiry(port: int):
    """Retained messages disappear once they expire"""
    print("\n4. Expiry (2 seconds)")

    with BrokerClient(HOST, port, "publisher") as publisher:
        publisher.publish("short lived", subject="expiring", expiry=time.time() + 2)
        print(f"   retained now: {publisher.get_messages('expiring')['count']}")
        time.sleep(3)
        print(f"   retained after 3s: {publisher.get_messages('expiring')['count']}")


def main():
    server = BrokerServer((HOST, 0))
    port = server.server_address[1]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    print("=" * 50)
    print(f"QUEUEBIT DEMO (port {port})")
    print("=" * 50)

    try:
        demo_fanout(port)
        demo_load_balancing(port)
        demo_remove_after_read(port)
        demo_expiry(port)
    finally:
        server.shutdown()
        server.server_close()

    print("\n" + "=" * 50)
    print("DEMO COMPLETE")
    print("=" * 50)


if __name__ == '__main__':
    main()
