import logging
from typing import List, Optional

from common.kafka import TOPIC_PAYOUT_EVENTS, get_producer
from common.schemas import PayoutEvent
from payout_service.models import PayoutTransaction

logger = logging.getLogger(__name__)

class PayoutEventPublisher:
    """Best-effort lifecycle events; a broker outage never affects the money path."""

    def __init__(self, producer=None, topic: str = TOPIC_PAYOUT_EVENTS, flush_timeout: float = 2.0):
        self._producer = producer
        self.topic = topic
        self.flush_timeout = flush_timeout

    @property
    def producer(self):
        if self._producer is None:
            self._producer = get_producer()
        return self._producer

    def publish(self, event: PayoutEvent) -> bool:
        try:
            self.producer.produce(
                self.topic,
                key=event.merchant_id.encode("utf-8"),
                value=event.model_dump_json().encode("utf-8"),
            )
            self.producer.flush(self.flush_timeout)
            logger.info(f"📤 Sent {event.type} for {event.transaction_id[:8]}...")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send {event.type} event for {event.transaction_id}: {e}")
            return False

    def publish_for(self, event_type: str, tx: PayoutTransaction, status: str = None,
                    provider_txn_id: str = None, reason: Optional[str] = None, **metadata) -> bool:
        return self.publish(PayoutEvent(
            type=event_type,
            transaction_id=tx.id,
            merchant_id=tx.merchant_id,
            client_ref_id=tx.client_ref_id,
            amount=tx.amount,
            charges=tx.charges,
            status=status or tx.status,
            provider_txn_id=provider_txn_id or tx.provider_txn_id,
            reason=reason,
            metadata=metadata,
        ))

class RecordingEventPublisher(PayoutEventPublisher):
    """Keeps events in memory; used when no broker is configured and in tests."""

    def __init__(self):
        super().__init__(producer=None)
        self.events: List[PayoutEvent] = []

    def publish(self, event: PayoutEvent) -> bool:
        self.events.append(event)
        return True

    def types(self) -> List[str]:
        return [e.type for e in self.events]
