import imaplib
import logging
import re
import ssl
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import MailSettings
from .errors import MailboxError

logger = logging.getLogger(__name__)

SUBJECT_PART = "HEADER.FIELDS (SUBJECT)"
TEXT_PART = "TEXT"

# BODY.PEEK leaves \Seen alone; messages are flagged only after publishing
FETCH_ITEMS = f"(BODY.PEEK[{SUBJECT_PART}] BODY.PEEK[{TEXT_PART}])"

_SECTION = re.compile(rb"BODY\[([^\]]*)\]")
_SEQNO = re.compile(rb"^(\d+) \(")


@dataclass
class FetchedMessage:
    """Raw parts of one message, keyed by the section they were fetched from."""

    uid: int
    seqno: int
    parts: Dict[str, bytes] = field(default_factory=dict)

    @property
    def subject_header(self) -> bytes:
        return self.parts.get(SUBJECT_PART, b"")

    @property
    def text(self) -> bytes:
        return self.parts.get(TEXT_PART, b"")


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not re.search(r'[\s"]', name):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _section_name(raw: bytes) -> str:
    # Some servers quote header names: HEADER.FIELDS ("SUBJECT")
    return raw.decode("ascii", errors="replace").replace('"', "").upper()


class ImapPoller:
    """
    Thin wrapper around an imaplib connection to one mailbox.

    All operations are blocking; async callers run them in a worker thread and
    must not share one poller between threads concurrently.
    """

    def __init__(
        self,
        settings: MailSettings,
        imap_factory: Optional[Callable[..., imaplib.IMAP4]] = None,
    ):
        self.settings = settings
        self._imap_factory = imap_factory or self._default_factory
        self._conn: Optional[imaplib.IMAP4] = None

    def _default_factory(self, host: str, port: int) -> imaplib.IMAP4:
        return imaplib.IMAP4_SSL(host, port, ssl_context=ssl.create_default_context())

    @property
    def mailbox(self) -> str:
        return self.settings.mailbox

    def connect(self) -> int:
        """Log in and open the mailbox read-write. Returns the message count."""
        attempts = max(1, self.settings.max_retries)
        for attempt in range(attempts):
            try:
                conn = self._imap_factory(self.settings.host, self.settings.port)
                conn.login(self.settings.user, self.settings.password)
                typ, data = conn.select(_quote_mailbox(self.mailbox), readonly=False)
                if typ != "OK":
                    raise MailboxError(f"Cannot open mailbox {self.mailbox!r}: {data!r}")
                self._conn = conn
                total = int(data[0]) if data and data[0] else 0
                logger.info(f"Connected to: {self.mailbox}")
                logger.info(f"Total messages: {total}")
                return total
            except (imaplib.IMAP4.error, OSError) as e:
                if attempt == attempts - 1:
                    raise MailboxError(f"IMAP connection to {self.settings.host} failed: {e}") from e
                wait_time = 2 ** attempt
                logger.warning(f"IMAP connection error: {e} - retrying in {wait_time}s")
                time.sleep(wait_time)
        raise MailboxError("IMAP connection failed")

    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailboxError("Not connected to IMAP server")
        return self._conn

    def search_unseen(self, since: Optional[str] = None) -> List[int]:
        """UIDs of unread messages, optionally received on or after `since` (dd-Mon-yyyy)."""
        criteria = ["UNSEEN"]
        if since:
            criteria += ["SINCE", since]
        typ, data = self._require_conn().uid("SEARCH", *criteria)
        if typ != "OK":
            raise MailboxError(f"IMAP search failed: {data!r}")
        if not data or not data[0]:
            return []
        return [int(uid) for uid in data[0].split() if uid.isdigit()]

    def fetch_message(self, uid: int) -> FetchedMessage:
        typ, data = self._require_conn().uid("FETCH", str(uid), FETCH_ITEMS)
        if typ != "OK" or not data:
            raise MailboxError(f"IMAP fetch of UID {uid} failed: {data!r}")

        message = FetchedMessage(uid=uid, seqno=0)
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            meta, payload = item[0], item[1]
            if not message.seqno:
                seq_match = _SEQNO.match(meta)
                if seq_match:
                    message.seqno = int(seq_match.group(1))
            section_match = _SECTION.search(meta)
            if section_match:
                message.parts[_section_name(section_match.group(1))] = payload or b""

        if not message.parts:
            raise MailboxError(f"IMAP fetch of UID {uid} returned no body sections")
        return message

    def mark_seen(self, uid: int) -> None:
        typ, data = self._require_conn().uid("STORE", str(uid), "+FLAGS", "(\\Seen)")
        if typ != "OK":
            raise MailboxError(f"Could not flag UID {uid} as seen: {data!r}")

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP close failed: {e}")
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning(f"IMAP logout failed: {e}")
        logger.info("Connection closed.")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
