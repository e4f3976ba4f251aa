from functools import lru_cache
from confluent_kafka import Producer
from common.settings import settings

@lru_cache(maxsize=1)
def get_producer() -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})

TOPIC_PAYOUT_EVENTS = "payout_events"
