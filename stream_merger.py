"""Fold streamed reply fragments into an ordered message sequence.

``ingest`` is a pure transition: it never mutates its input and returns the
new sequence. The open message is re-derived by scanning backward on every
call instead of being cached, so a missed completion signal cannot leave a
frozen message looking open.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

from models import Fragment, MergeOutcome, Message, Role

logger = logging.getLogger(__name__)


def find_open_message(messages: Sequence[Message]) -> Optional[int]:
    """Index of the most recent assistant message if it is still streaming."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role is Role.ASSISTANT:
            return index if message.streaming else None
    return None


def ingest(messages: Sequence[Message], fragment: Fragment) -> MergeOutcome:
    open_index = find_open_message(messages)

    if fragment.is_new_message or open_index is None:
        return _append(messages, fragment)

    current = messages[open_index]
    text = current.text
    if fragment.complete_text:
        text = fragment.complete_text
    elif fragment.chunk:
        text += fragment.chunk

    updated = replace(
        current,
        text=text,
        streaming=not fragment.is_complete,
        data=fragment.data if fragment.data is not None else current.data,
    )
    merged = list(messages)
    merged[open_index] = updated
    return MergeOutcome(
        messages=tuple(merged),
        message=updated,
        created=False,
        finalized=current.streaming and not updated.streaming,
    )


def _append(messages: Sequence[Message], fragment: Fragment) -> MergeOutcome:
    # An empty complete_text carries nothing.
    text = fragment.complete_text or fragment.chunk or ""

    merged = []
    for message in messages:
        if message.role is Role.ASSISTANT and message.streaming:
            # Its completion signal never arrived.
            logger.warning("closing stale streaming message %s", message.id)
            message = replace(message, streaming=False)
        merged.append(message)

    created = Message(
        role=Role.ASSISTANT,
        text=text,
        streaming=not fragment.is_complete,
        data=fragment.data,
    )
    merged.append(created)
    return MergeOutcome(
        messages=tuple(merged),
        message=created,
        created=True,
        finalized=fragment.is_complete,
    )
