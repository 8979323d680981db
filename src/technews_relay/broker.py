"""
Kafka access via confluent-kafka.

The producer is idempotent (`enable.idempotence`) and `publish` blocks until
the broker acknowledges the record. The consumer commits offsets manually so
a record is only marked consumed once it has been handled.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer

from .config import KafkaSettings
from .errors import PublishError

logger = logging.getLogger(__name__)


def producer_config(settings: KafkaSettings) -> Dict[str, Any]:
    config = settings.client_config()
    config.update({
        "acks": "all",
        "enable.idempotence": True,
    })
    return config


def consumer_config(settings: KafkaSettings, group_id: Optional[str] = None) -> Dict[str, Any]:
    config = settings.client_config()
    config.update({
        "group.id": group_id or settings.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    return config


def build_consumer(settings: KafkaSettings, group_id: Optional[str] = None) -> Consumer:
    consumer = Consumer(consumer_config(settings, group_id))
    consumer.subscribe([settings.topic])
    logger.info(f"Consumer subscribed to topic: {settings.topic}")
    return consumer


class KafkaPublisher:
    """Publishes serialized records and waits for the delivery report."""

    def __init__(
        self,
        settings: KafkaSettings,
        max_retries: int = 3,
        flush_timeout: float = 30.0,
        producer: Optional[Producer] = None,
    ):
        self.settings = settings
        self.max_retries = max(1, max_retries)
        self.flush_timeout = flush_timeout
        self._producer = producer or Producer(producer_config(settings))

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> None:
        last_error = "no attempt made"
        for attempt in range(self.max_retries):
            try:
                self._send_once(topic, value, key)
                return
            except (KafkaException, BufferError, PublishError) as e:
                last_error = str(e)
                logger.warning(
                    f"Publish to {topic} failed (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)
        raise PublishError(f"Could not publish to {topic}: {last_error}")

    def _send_once(self, topic: str, value: bytes, key: Optional[str]) -> None:
        errors: List[KafkaError] = []
        delivered: List[bool] = []

        def on_delivery(err, msg):
            if err is not None:
                errors.append(err)
            else:
                delivered.append(True)

        self._producer.produce(topic, value=value, key=key, on_delivery=on_delivery)
        remaining = self._producer.flush(self.flush_timeout)

        if errors:
            raise PublishError(f"Broker rejected record: {errors[0]}")
        if remaining or not delivered:
            raise PublishError(f"Delivery not confirmed within {self.flush_timeout}s")

    def close(self) -> None:
        remaining = self._producer.flush(self.flush_timeout)
        if remaining:
            logger.warning(f"{remaining} record(s) still queued at shutdown")
