import asyncio
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from confluent_kafka import KafkaError

from technews_relay.consumer import Deliverer, dedupe_key_for
from technews_relay.database import init_db, is_delivered, list_deliveries
from technews_relay.envelope import AvroCodec, EmailRecord
from technews_relay.errors import DeliveryError


def _kafka_message(value, key=b"technews-relay:Tech News:42:7", offset=5):
    msg = MagicMock()
    msg.error.return_value = None
    msg.value.return_value = value
    msg.key.return_value = key
    msg.topic.return_value = "technews"
    msg.partition.return_value = 0
    msg.offset.return_value = offset
    return msg


class TestDedupeKey(unittest.TestCase):
    def test_producer_key(self):
        self.assertEqual(dedupe_key_for(_kafka_message(b"")), "technews-relay:Tech News:42:7")

    def test_position_fallback(self):
        self.assertEqual(dedupe_key_for(_kafka_message(b"", key=None, offset=9)), "kafka:technews:0:9")


class TestDeliverer(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmp.name) / "relay.sqlite"
        init_db(self.db_path)

        self.codec = AvroCodec()
        self.record = EmailRecord(seqno=7, subject="*Daily*", body="Big News\nhttps://example.com/a")
        self.consumer = MagicMock()
        self.webhook = MagicMock()
        self.webhook.post_record.return_value = 1
        self.deliverer = Deliverer(
            consumer=self.consumer,
            codec=self.codec,
            webhook=self.webhook,
            max_block_text=2900,
            db_path=self.db_path,
        )

    def tearDown(self):
        self.tmp.cleanup()

    async def test_delivers_records_and_commits(self):
        msg = _kafka_message(self.codec.encode(self.record))

        posted = await self.deliverer.handle(msg)

        self.assertTrue(posted)
        self.webhook.post_record.assert_called_once_with(self.record, 2900)
        self.consumer.commit.assert_called_once_with(message=msg, asynchronous=False)
        self.assertTrue(is_delivered("technews-relay:Tech News:42:7", db_path=self.db_path))

    async def test_redelivered_record_skipped(self):
        msg = _kafka_message(self.codec.encode(self.record))

        await self.deliverer.handle(msg)
        posted = await self.deliverer.handle(msg)

        self.assertFalse(posted)
        self.webhook.post_record.assert_called_once()
        self.assertEqual(self.consumer.commit.call_count, 2)

    async def test_undecodable_record_committed_and_skipped(self):
        msg = _kafka_message(b"\xff\xff")

        posted = await self.deliverer.handle(msg)

        self.assertFalse(posted)
        self.webhook.post_record.assert_not_called()
        self.consumer.commit.assert_called_once_with(message=msg, asynchronous=False)

    async def test_webhook_failure_not_recorded(self):
        self.webhook.post_record.side_effect = DeliveryError("HTTP 500")
        msg = _kafka_message(self.codec.encode(self.record))

        posted = await self.deliverer.handle(msg)

        self.assertFalse(posted)
        self.assertEqual(list_deliveries(db_path=self.db_path), [])
        self.consumer.commit.assert_called_once()

    async def test_run_polls_until_stopped(self):
        msg = _kafka_message(self.codec.encode(self.record))
        eof = MagicMock()
        eof.error.return_value.code.return_value = KafkaError._PARTITION_EOF
        queue = [msg, eof]

        def poll(timeout):
            if queue:
                return queue.pop(0)
            time.sleep(0.01)
            return None

        self.consumer.poll.side_effect = poll
        stop_event = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.1)
            stop_event.set()

        await asyncio.gather(self.deliverer.run(stop_event), stop_soon())

        self.webhook.post_record.assert_called_once()
        self.consumer.close.assert_called_once()

    async def test_unexpected_error_is_contained(self):
        first = _kafka_message(self.codec.encode(self.record), key=b"k1", offset=1)
        second = _kafka_message(self.codec.encode(self.record), key=b"k2", offset=2)
        queue = [first, second]

        def poll(timeout):
            if queue:
                return queue.pop(0)
            time.sleep(0.01)
            return None

        self.consumer.poll.side_effect = poll
        self.webhook.post_record.side_effect = [ValueError("bad Retry-After"), 1]
        stop_event = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.1)
            stop_event.set()

        await asyncio.gather(self.deliverer.run(stop_event), stop_soon())

        self.assertEqual(self.webhook.post_record.call_count, 2)
        self.consumer.commit.assert_called_once_with(message=second, asynchronous=False)
        self.assertFalse(is_delivered("k1", db_path=self.db_path))
        self.assertTrue(is_delivered("k2", db_path=self.db_path))
        self.consumer.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
