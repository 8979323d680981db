"""
Delivery driver: Kafka -> EmailRecord -> Slack webhook.

Offsets are committed after a record has been handled (delivered, found in
the ledger, or dropped as undecodable), giving at-least-once delivery. The
sqlite ledger turns redelivered records into no-ops.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from confluent_kafka import KafkaError, KafkaException

from .chunker import MAX_BLOCK_TEXT
from .database import is_delivered, record_delivery
from .errors import DecodeError, DeliveryError
from .slack import SlackWebhook

logger = logging.getLogger(__name__)

POLL_TIMEOUT = 1.0


def _fallback_key(msg) -> str:
    return f"kafka:{msg.topic()}:{msg.partition()}:{msg.offset()}"


def dedupe_key_for(msg) -> str:
    """Key set by the producer, or the record's log position when it has none."""
    key = msg.key()
    if key:
        return key.decode("utf-8", errors="replace") if isinstance(key, bytes) else str(key)
    return _fallback_key(msg)


class Deliverer:
    def __init__(
        self,
        consumer,
        codec,
        webhook: SlackWebhook,
        max_block_text: int = MAX_BLOCK_TEXT,
        db_path: Optional[Path] = None,
    ):
        self.consumer = consumer
        self.codec = codec
        self.webhook = webhook
        self.max_block_text = max_block_text
        self.db_path = db_path

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll and deliver until the stop event is set, then close the consumer."""
        logger.info("Consumer started. Waiting for messages...")
        try:
            while not stop_event.is_set():
                msg = await asyncio.to_thread(self.consumer.poll, POLL_TIMEOUT)
                if msg is None:
                    continue
                if msg.error():
                    self._log_poll_error(msg.error())
                    continue
                try:
                    await self.handle(msg)
                except Exception:
                    # Offset stays uncommitted; the record is redelivered after a restart or rebalance
                    logger.exception(f"Unexpected error handling record at offset {msg.offset()}")
        finally:
            await asyncio.to_thread(self.consumer.close)
            logger.info("Consumer closed")

    def _log_poll_error(self, err) -> None:
        if err.code() == KafkaError._PARTITION_EOF:
            logger.debug(f"Reached end of partition: {err}")
        elif err.fatal():
            raise KafkaException(err)
        else:
            logger.error(f"Consumer error: {err}")

    async def handle(self, msg) -> bool:
        """
        Deliver one Kafka message to Slack.

        Returns True if the record was posted in this call.
        """
        posted = False
        try:
            record = self.codec.decode(msg.value())
        except DecodeError as e:
            logger.error(f"Skipping undecodable record at offset {msg.offset()}: {e}")
            self._commit(msg)
            return posted

        dedupe_key = dedupe_key_for(msg)
        if await asyncio.to_thread(is_delivered, dedupe_key, self.db_path):
            logger.info(f"Already delivered, skipping: {dedupe_key}")
            self._commit(msg)
            return posted

        logger.info(f"Received message #{record.seqno}")
        try:
            payload_count = await asyncio.to_thread(
                self.webhook.post_record, record, self.max_block_text
            )
        except DeliveryError as e:
            logger.error(f"Error sending message #{record.seqno} to Slack: {e}")
        else:
            await asyncio.to_thread(
                record_delivery, dedupe_key, record.seqno, record.subject, payload_count, self.db_path
            )
            posted = True

        self._commit(msg)
        return posted

    def _commit(self, msg) -> None:
        try:
            self.consumer.commit(message=msg, asynchronous=False)
        except KafkaException as e:
            # Uncommitted records are redelivered after a rebalance
            logger.warning(f"Offset commit failed at {msg.offset()}: {e}")
