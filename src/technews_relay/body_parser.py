"""
Email body parsing - raw TEXT part to Slack-ready plain text.

The pipeline runs in a fixed order; boilerplate markers are matched against
partially cleaned text, so reordering the stages changes what survives:

1. transfer decoding + UTF-8 (never raises, falls back to a placeholder)
2. HTML to text, with anchors rendered as Slack links
3. newsletter boilerplate removal
4. MIME / markup artifact removal
5. line-break normalization
6. heading emphasis
"""

import base64
import logging
import quopri
import re
import textwrap
from email import policy
from email.parser import BytesHeaderParser
from typing import Union

from bs4 import BeautifulSoup, NavigableString
from markdownify import MarkdownConverter, abstract_inline_conversion

from .byline import is_author_link, is_byline_line
from .envelope import NO_SUBJECT

logger = logging.getLogger(__name__)

UNDECODABLE_BODY = "(Unable to decode email body)"
DEFAULT_WRAP_WIDTH = 230

IDENTITY_ENCODINGS = {"7bit", "8bit", "binary"}

HTML_MARKER = re.compile(r"<html|<body", re.IGNORECASE)

# Layout tables are flattened so each cell renders as its own block
LAYOUT_TAGS = ["table", "thead", "tbody", "tfoot", "tr", "td", "th", "center"]
DROPPED_TAGS = ["head", "title", "script", "style"]

# Boilerplate markers
TOGETHER_WITH = re.compile(r"Together With[^\n]*\n?", re.IGNORECASE)
TLDR_START = re.compile(r"^TLDR", re.IGNORECASE | re.MULTILINE)
END_MARKERS = [
    re.compile(r"Love TLDR\? Tell your friends and get rewards!", re.IGNORECASE),
    re.compile(r"how did we do today", re.IGNORECASE),
]

# MIME / markup artifacts
MIME_HEADER_LINE = re.compile(
    r"^(?:Content-Type|Content-Transfer-Encoding):.*(?:(?:\r\n|\n|\r)[ \t]+.*)*(?:\r\n|\n|\r)*",
    re.IGNORECASE | re.MULTILINE,
)
BOUNDARY_LINE = re.compile(r"^--\S.*(?:\r\n|\n|\r)*", re.MULTILINE)
# Slack links (<https://...|text>, <mailto:...>) are markup we produced, not tags
RESIDUAL_TAG = re.compile(r"<(?!https?://|mailto:)[^>]+>")
NON_PRINTABLE = re.compile(r"[^\x20-\x7E\r\n]")
IMAGE_URL = re.compile(
    r"https?://[^\s|<>]+\.(?:png|jpe?g|gif|svg)(?:\?[^\s|<>]*)?(?=$|[\s|>)\]])",
    re.IGNORECASE,
)

TRAILING_SPACES = re.compile(r" +(?=[\r\n])")
LINE_BREAKS = re.compile(r"(?:\r\n|\n|\r)+")

HEADING_LINE = re.compile(r"^(?=[A-Z0-9 &]*[A-Z0-9])[A-Z0-9 &]+$", re.MULTILINE)
STRAY_BRACKETS = re.compile(r"^\[|\]$", re.MULTILINE)


class SlackTextConverter(MarkdownConverter):
    """markdownify converter emitting Slack mrkdwn instead of Markdown."""

    convert_b = abstract_inline_conversion(lambda self: "*")
    convert_strong = convert_b
    convert_em = abstract_inline_conversion(lambda self: "_")
    convert_i = convert_em

    def convert_a(self, el, text, parent_tags):
        label = text.strip()
        href = (el.get("href") or "").strip()
        if not href or IMAGE_URL.fullmatch(href):
            # Image URLs are stripped later; keep the label as plain text
            return text
        if is_author_link(label.strip("*_ "), _container_text(el)):
            return text
        prefix = " " if text[:1].isspace() else ""
        suffix = " " if text[-1:].isspace() else ""
        return f"{prefix}<{href}|{label or 'Link'}>{suffix}"

    def convert_img(self, el, text, parent_tags):
        return ""

    def convert_hN(self, n, el, text, parent_tags):
        if "_inline" in parent_tags:
            return text
        text = " ".join(text.split())
        # Upper-case plain headings so they get emphasized later; linked ones keep their URL intact
        if el.find("a") is None:
            text = text.upper()
        return f"\n\n{text}\n\n" if text else ""


def _container_text(el) -> str:
    """First text node of the anchor's parent, e.g. 'by ' in 'by <a>Jane</a>'."""
    parent = el.parent
    if parent is None or not parent.contents:
        return ""
    first = parent.contents[0]
    return str(first) if isinstance(first, NavigableString) else ""


def looks_like_html(text: str) -> bool:
    return HTML_MARKER.search(text) is not None


def html_to_text(html: str, wrap_width: int = DEFAULT_WRAP_WIDTH) -> str:
    """
    Convert an HTML body to plain text.

    Keeps newlines from the source, wraps every line at `wrap_width` and
    renders anchors as `<href|text>` unless they credit an author.
    """
    if not html:
        return ""

    # Strip HTML comments (often contain CSS, conditionals, etc.)
    html = re.sub(r"<!--[\s\S]*?-->", "", html)

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(DROPPED_TAGS):
        tag.decompose()
    for tag in soup.find_all(LAYOUT_TAGS):
        tag.name = "div"

    converter = SlackTextConverter(
        bullets="-",
        escape_asterisks=False,
        escape_underscores=False,
        autolinks=False,
    )
    text = converter.convert_soup(soup)

    wrapped = []
    for line in text.split("\n"):
        if len(line) <= wrap_width:
            wrapped.append(line)
            continue
        wrapped.append(
            textwrap.fill(line, width=wrap_width, break_long_words=False, break_on_hyphens=False)
        )
    return "\n".join(wrapped)


def decode_transfer_encoding(raw: bytes, transfer_encoding: str = "quoted-printable") -> bytes:
    encoding = (transfer_encoding or "7bit").strip().lower()
    if encoding == "quoted-printable":
        return quopri.decodestring(raw)
    if encoding == "base64":
        return base64.b64decode(raw)
    if encoding in IDENTITY_ENCODINGS:
        return raw
    raise ValueError(f"Unsupported transfer encoding: {transfer_encoding}")


def strip_boilerplate(text: str) -> str:
    """Drop the newsletter's sponsor header, preamble and footer."""
    match = TOGETHER_WITH.search(text)
    if match:
        text = text[match.end():]

    match = TLDR_START.search(text)
    if match:
        text = text[match.start():].strip()

    for marker in END_MARKERS:
        match = marker.search(text)
        if match:
            text = text[:match.start()].strip()

    return text


def strip_artifacts(text: str) -> str:
    text = MIME_HEADER_LINE.sub("", text)
    text = BOUNDARY_LINE.sub("", text)
    text = RESIDUAL_TAG.sub("", text)
    text = NON_PRINTABLE.sub("", text)
    text = IMAGE_URL.sub("", text)
    return "".join(
        line for line in text.splitlines(keepends=True) if not is_byline_line(line)
    )


def normalize_line_breaks(text: str) -> str:
    text = TRAILING_SPACES.sub("", text)
    return LINE_BREAKS.sub("\n", text)


def emphasize_headings(text: str) -> str:
    """Bold all-caps lines (section headings) and drop stray brackets."""
    text = HEADING_LINE.sub(lambda m: f"*{m.group(0).strip()}*", text)
    return STRAY_BRACKETS.sub("", text)


def normalize_body(
    raw: Union[bytes, str],
    transfer_encoding: str = "quoted-printable",
    wrap_width: int = DEFAULT_WRAP_WIDTH,
) -> str:
    """Turn a raw TEXT part into Slack-ready plain text. Never raises on bad input."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="surrogateescape")

    try:
        text = decode_transfer_encoding(raw, transfer_encoding).decode("utf-8")
    except ValueError as e:
        # UnicodeDecodeError and binascii.Error are both ValueErrors
        logger.warning(f"Unable to decode email body ({transfer_encoding}): {e}")
        return UNDECODABLE_BODY

    if looks_like_html(text):
        text = html_to_text(text, wrap_width=wrap_width)

    text = strip_boilerplate(text)
    text = strip_artifacts(text)
    text = normalize_line_breaks(text)
    text = emphasize_headings(text)
    return text.strip()


def parse_subject(raw_header: Union[bytes, str]) -> str:
    """Subject from a HEADER.FIELDS (SUBJECT) part, wrapped in Slack bold."""
    if isinstance(raw_header, str):
        raw_header = raw_header.encode("utf-8", errors="surrogateescape")

    headers = BytesHeaderParser(policy=policy.default).parsebytes(raw_header)
    subject = headers.get("Subject")
    subject = " ".join(str(subject).split()) if subject is not None else ""
    return f"*{subject}*" if subject else NO_SUBJECT
