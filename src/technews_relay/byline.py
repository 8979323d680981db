"""
Author-byline detection.

Newsletters credit authors as "by Jane Doe" or with a bare linked name. The
same patterns decide both whether an anchor is rendered as a hyperlink and
whether a plain-text line is dropped, so the two never disagree.
"""

import re

# Capitalized ASCII word; "by" itself is matched case-insensitively below.
_NAME_WORD = r"[A-Z][a-z]+"

BY_LABEL = re.compile(r"^\s*[Bb][Yy]\s+")
BYLINE = re.compile(rf"^\s*[Bb][Yy]\s+{_NAME_WORD}\b")
AUTHOR_NAME = re.compile(rf"^{_NAME_WORD}(?:\s+{_NAME_WORD}){{1,3}}$")


def is_byline_line(line: str) -> bool:
    """True for lines like 'by Jane Doe, 4 minute read'."""
    return BYLINE.match(line) is not None


def is_author_link(text: str, context: str = "") -> bool:
    """
    True when an anchor with this text should render as plain text.

    `context` is the text its container starts with; 'by <a>Jane</a>' has
    context 'by '.
    """
    if BY_LABEL.match(context or ""):
        return True
    if is_byline_line(text):
        return True
    return AUTHOR_NAME.match(text.strip()) is not None
