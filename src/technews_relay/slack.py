"""
Slack formatting and incoming-webhook delivery.
"""

import logging
import math
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import requests

from .chunker import MAX_BLOCK_TEXT, split_into_blocks
from .envelope import EmailRecord
from .errors import DeliveryError

logger = logging.getLogger(__name__)

# Longer lines are paragraphs, not headings
MAX_HEADING_LENGTH = 300
# Slack rejects messages with more than 50 blocks
MAX_BLOCKS_PER_MESSAGE = 50

BARE_URL = re.compile(r"^https?://\S+$")
SLACK_LINK = re.compile(r"^<https?://[^|>]+\|.*>$")


def hyperlink_headings(body: str) -> str:
    """
    Merge a heading line with the bare URL on the next line into `<url|heading>`.

    Lines that are already Slack links are left alone, so a second pass over
    the output changes nothing.
    """
    lines = body.split("\n")
    result = []
    i = 0
    while i < len(lines):
        heading = lines[i]
        url = lines[i + 1] if i + 1 < len(lines) else None
        if (
            heading
            and url
            and BARE_URL.match(url)
            and len(heading) < MAX_HEADING_LENGTH
            and not SLACK_LINK.match(heading)
        ):
            result.append(f"<{url}|{heading}>")
            i += 2
        else:
            result.append(heading)
            i += 1
    return "\n".join(result)


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else default
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def build_payloads(
    record: EmailRecord,
    max_len: int = MAX_BLOCK_TEXT,
    hyperlink: bool = True,
) -> List[Dict[str, Any]]:
    """
    Webhook payloads for one record, in posting order.

    The first payload starts with the subject header block. Bodies that need
    more than 50 blocks continue in further payloads.
    """
    body = hyperlink_headings(record.body) if hyperlink else record.body
    blocks = [section(f"*Subject:* {record.subject}\n*Body:*")]
    blocks.extend(section(chunk) for chunk in split_into_blocks(body, max_len))

    return [
        {"blocks": blocks[start:start + MAX_BLOCKS_PER_MESSAGE]}
        for start in range(0, len(blocks), MAX_BLOCKS_PER_MESSAGE)
    ]


class SlackWebhook:
    """POSTs Block Kit payloads to a Slack incoming webhook."""

    def __init__(
        self,
        url: str,
        max_retries: int = 3,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not url:
            raise ValueError("Slack webhook URL is required")
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.session = session or requests.Session()

    def post(self, payload: Dict[str, Any]) -> None:
        """Send one payload, retrying on rate limits, 5xx and connection errors."""
        last_error = "no attempt made"
        for attempt in range(self.max_retries):
            try:
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning(f"Webhook request failed (attempt {attempt + 1}/{self.max_retries}): {e}")
                self._backoff(attempt)
                continue

            if resp.ok:
                return

            if resp.status_code == 429:
                # Rate limited - respect Retry-After header
                retry_after = parse_retry_after(resp.headers.get("Retry-After"), default=2 ** attempt)
                last_error = "rate limited"
                logger.debug(f"Rate limited, waiting {retry_after}s before retry {attempt + 1}")
                if attempt < self.max_retries - 1:
                    time.sleep(retry_after)
                continue

            last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
            if resp.status_code < 500:
                # Client errors (bad payload, revoked hook) will not succeed on retry
                break
            logger.warning(f"Webhook returned {resp.status_code} (attempt {attempt + 1}/{self.max_retries})")
            self._backoff(attempt)

        raise DeliveryError(f"Slack webhook delivery failed: {last_error}")

    def post_record(self, record: EmailRecord, max_len: int = MAX_BLOCK_TEXT) -> int:
        """Post every payload for a record; returns the number of payloads sent."""
        payloads = build_payloads(record, max_len=max_len)
        for payload in payloads:
            self.post(payload)
        logger.info(f"Sent to Slack: {record.subject} ({len(payloads)} message(s))")
        return len(payloads)

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1:
            time.sleep(2 ** attempt)
