"""
Ingestion driver: IMAP mailbox -> normalized EmailRecord -> Kafka.

One fetch session per cycle. Every message found by the search gets its own
task; IMAP calls share a single connection, so they are serialized by a lock
and run in a worker thread. A message is flagged \\Seen only after the broker
acknowledged it, so a crash in between leads to a re-publish (deduplicated by
the consumer) rather than a lost email.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .body_parser import normalize_body, parse_subject
from .broker import KafkaPublisher
from .config import RelaySettings
from .database import make_dedupe_key
from .envelope import EmailRecord
from .errors import EncodeError, MailboxError, PublishError
from .poller import FetchedMessage, ImapPoller

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


@dataclass
class CycleResult:
    found: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0


def build_record(message: FetchedMessage, wrap_width: int = 230) -> EmailRecord:
    """Assemble the record for one fetched message."""
    return EmailRecord(
        seqno=message.seqno,
        subject=parse_subject(message.subject_header),
        body=normalize_body(message.text, wrap_width=wrap_width),
    )


class Ingestor:
    def __init__(
        self,
        poller_factory: Callable[[], ImapPoller],
        publisher: KafkaPublisher,
        codec,
        topic: str,
        settings: Optional[RelaySettings] = None,
        since: Optional[str] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.poller_factory = poller_factory
        self.publisher = publisher
        self.codec = codec
        self.topic = topic
        self.settings = settings or RelaySettings()
        self.since = since
        self.stop_event = stop_event or asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    async def run_cycle(self, concurrency: int = DEFAULT_CONCURRENCY) -> CycleResult:
        """Run one fetch session: search, process every hit, then close the session."""
        result = CycleResult()
        poller = self.poller_factory()
        await asyncio.to_thread(poller.connect)
        try:
            uids = await asyncio.to_thread(poller.search_unseen, self.since)
            result.found = len(uids)
            if not uids:
                logger.info("No unread emails found.")
                return result

            logger.info(f"Processing {len(uids)} emails with concurrency={concurrency}")
            imap_lock = asyncio.Lock()
            semaphore = asyncio.Semaphore(concurrency)

            async def process_with_semaphore(uid: int):
                async with semaphore:
                    return await self._process_message(poller, imap_lock, uid)

            outcomes = await asyncio.gather(
                *(process_with_semaphore(uid) for uid in uids),
                return_exceptions=True,
            )
            for uid, outcome in zip(uids, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Unexpected error processing UID {uid}: {outcome!r}")
                    result.failed += 1
                elif outcome is None:
                    result.skipped += 1
                elif outcome:
                    result.published += 1
                else:
                    result.failed += 1

            logger.info(
                f"Done fetching: {result.published} published, "
                f"{result.failed} failed, {result.skipped} skipped"
            )
            return result
        finally:
            await asyncio.to_thread(poller.close)

    async def _process_message(self, poller: ImapPoller, imap_lock: asyncio.Lock, uid: int) -> Optional[bool]:
        """
        Fetch, normalize, publish and flag one message.

        Returns True when published, False on failure, None when skipped
        because shutdown was requested.
        """
        if self.stopping:
            logger.info(f"Shutdown requested, leaving UID {uid} for the next run")
            return None

        try:
            async with imap_lock:
                message = await asyncio.to_thread(poller.fetch_message, uid)
        except MailboxError as e:
            logger.error(f"Error fetching UID {uid}: {e}")
            return False

        logger.info(f"Message #{message.seqno} (UID {uid})")
        record = build_record(message, wrap_width=self.settings.wrap_width)

        try:
            payload = self.codec.encode(record)
        except EncodeError as e:
            logger.error(f"Dropping message #{message.seqno}: {e}")
            return False

        key = make_dedupe_key(poller.mailbox, uid, message.seqno)
        try:
            await asyncio.to_thread(self.publisher.publish, self.topic, payload, key)
        except PublishError as e:
            logger.error(f"Message #{message.seqno} left unread for retry: {e}")
            return False
        logger.info(f"Sent to Kafka ({self.codec.name}): {record.subject}")

        try:
            async with imap_lock:
                await asyncio.to_thread(poller.mark_seen, uid)
        except MailboxError as e:
            # Already published; a re-publish next cycle is deduplicated downstream
            logger.warning(f"Published UID {uid} but could not flag it seen: {e}")
        return True

    async def run_forever(self, poll_interval: int, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        """Run cycles until the stop event is set."""
        while not self.stopping:
            try:
                await self.run_cycle(concurrency=concurrency)
            except MailboxError as e:
                logger.error(f"Mailbox session failed: {e}")

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Ingestion stopped")
