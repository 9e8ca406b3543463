"""
Simple status checker for the QueueBit broker.
"""
import time

from client import BrokerClient


def main():
    print("QueueBit Status Check")
    print("=" * 40)

    try:
        with BrokerClient(client_id="status_checker") as client:
            print("✓ Connected to broker successfully")

            result = client.publish(f"Status check at {time.time()}", subject="status",
                                    remove_after_read=True)
            if result['success']:
                print(f"✓ Message publishing working ({result['message_id']})")
            else:
                print(f"✗ Message publishing failed: {result['error']}")

            result = client.get_messages("status")
            if result['success']:
                print(f"✓ Retained snapshot working ({result['count']} on 'status')")
            else:
                print(f"✗ Retained snapshot failed: {result['error']}")

            if client.server_version:
                print(f"  Server version: {client.server_version}")

            print("\nBroker appears to be working correctly!")

    except OSError as e:
        print(f"✗ Error connecting to broker: {e}")


if __name__ == '__main__':
    main()
