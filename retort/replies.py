"""Turn raw completion text into discrete reply cards.

parse_replies() is the only place unstructured model output becomes
separate replies. It tries, in order:

1. newline split (blank lines dropped), first three lines;
2. numbered-list extraction ("1. ...", "2、..."), numbering stripped;
3. the whole trimmed text as a single reply.

It never raises and never returns more than MAX_REPLIES entries.
"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel

MAX_REPLIES = 3

# digits, "." or "、", then a run of non-digits
_NUMBERED_ITEM = re.compile(r"[0-9]+[.、]\s*[^0-9]+")
_NUMBER_PREFIX = re.compile(r"^[0-9]+[.、]\s*")


def parse_replies(content: str) -> list[str]:
    """Split completion text into at most three non-empty replies, in model order."""
    lines = [line.strip() for line in content.split("\n") if line.strip()]
    if len(lines) >= MAX_REPLIES:
        replies = lines[:MAX_REPLIES]
    else:
        numbered = [m.group(0) for m in _NUMBERED_ITEM.finditer(content)]
        if len(numbered) >= MAX_REPLIES:
            replies = [_NUMBER_PREFIX.sub("", item).strip() for item in numbered]
        else:
            replies = [content.strip()]

    return [reply for reply in replies if reply][:MAX_REPLIES]


class ReplyStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"


class ReplyCard(BaseModel):
    """One reply slot as the display layer sees it."""

    index: int
    status: ReplyStatus
    content: str = ""


def project_cards(text: str, complete: bool) -> list[ReplyCard]:
    """Project accumulated stream text onto reply cards.

    While streaming, every non-empty line is a card; the last one is still
    being written and missing slots are pending. Once complete, the cards
    are exactly parse_replies(text).
    """
    if complete:
        return [
            ReplyCard(index=i, status=ReplyStatus.COMPLETE, content=reply)
            for i, reply in enumerate(parse_replies(text))
        ]

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    cards = [
        ReplyCard(index=i, status=ReplyStatus.COMPLETE, content=line)
        for i, line in enumerate(lines[:MAX_REPLIES])
    ]
    # A line is finished once a newline follows it
    if cards and len(lines) <= MAX_REPLIES and not text.rstrip(" \t").endswith("\n"):
        cards[-1] = cards[-1].model_copy(update={"status": ReplyStatus.STREAMING})
    while len(cards) < MAX_REPLIES:
        cards.append(ReplyCard(index=len(cards), status=ReplyStatus.PENDING))
    return cards
