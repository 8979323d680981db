"""
Line-preserving chunking of message bodies for Slack section blocks.

Key design decisions:
- Blocks are cut only at newlines; a line is never split
- A single line longer than the budget becomes its own oversized block
- Joining the blocks with newlines gives back the input exactly
"""

from typing import List

# Slack caps section text at 3000 characters; leave room for formatting
MAX_BLOCK_TEXT = 2900


def split_into_blocks(text: str, max_len: int = MAX_BLOCK_TEXT) -> List[str]:
    """Greedily pack newline-delimited lines into blocks of at most `max_len` characters."""
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if not text:
        return []

    blocks: List[str] = []
    current: List[str] = []
    current_len = 0

    for line in text.split("\n"):
        if current and current_len + 1 + len(line) > max_len:
            blocks.append("\n".join(current))
            current = [line]
            current_len = len(line)
        elif current:
            current.append(line)
            current_len += 1 + len(line)
        else:
            current = [line]
            current_len = len(line)

    if current:
        blocks.append("\n".join(current))
    return blocks
