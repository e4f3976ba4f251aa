import json
import unittest
from decimal import Decimal

from payout_service.events import PayoutEventPublisher
from fakes import add_transaction, make_session_factory

class FakeProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []
        self.flushes = 0

    def produce(self, topic, key=None, value=None):
        if self.fail:
            raise BufferError("Local: Queue full")
        self.messages.append((topic, key, value))

    def flush(self, timeout=None):
        self.flushes += 1
        return 0

class TestPayoutEventPublisher(unittest.TestCase):
    def setUp(self):
        self.tx = add_transaction(make_session_factory(), status="processing", provider_txn_id="UTR55")

    def test_publishes_keyed_by_merchant(self):
        producer = FakeProducer()
        publisher = PayoutEventPublisher(producer=producer)

        self.assertTrue(publisher.publish_for("PayoutProcessing", self.tx, attempt=1))

        topic, key, value = producer.messages[0]
        self.assertEqual(topic, "payout_events")
        self.assertEqual(key, b"m1")
        body = json.loads(value)
        self.assertEqual(body["type"], "PayoutProcessing")
        self.assertEqual(body["transaction_id"], self.tx.id)
        self.assertEqual(body["status"], "processing")
        self.assertEqual(body["provider_txn_id"], "UTR55")
        self.assertEqual(Decimal(str(body["amount"])), Decimal("500"))
        self.assertEqual(body["metadata"], {"attempt": 1})
        self.assertEqual(producer.flushes, 1)

    def test_broker_failure_is_swallowed(self):
        publisher = PayoutEventPublisher(producer=FakeProducer(fail=True))

        self.assertFalse(publisher.publish_for("PayoutFailed", self.tx, status="failed", reason="Invalid account"))

if __name__ == "__main__":
    unittest.main()
