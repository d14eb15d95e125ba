"""
Message tree operations over a Thread.

Messages live in `thread.messages` in arrival order and form a forest rooted
at "root" through `parent_id`. Siblings appear when a turn is edited or
regenerated.
"""

import logging
from typing import Iterable

from threadchat.models.chat import (
    ROOT,
    Message,
    MessageStatus,
    Sender,
    Thread,
)
from threadchat.services.clock import parse_to_utc

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


def append(thread: Thread, *messages: Message) -> None:
    """Insert in arrival order; timestamps never reorder the list."""
    for message in messages:
        message.thread_id = thread.id
        thread.messages.append(message)


def find(thread: Thread, message_id: str | None) -> Message | None:
    if not message_id or message_id == ROOT:
        return None
    for message in thread.messages:
        if message.id == message_id:
            return message
    return None


def children(thread: Thread, message_id: str) -> list[Message]:
    return [m for m in thread.messages if m.parent_id == message_id]


def _role(message: Message) -> str:
    return "user" if message.sender == Sender.USER else "assistant"


def history_to(
    thread: Thread,
    leaf: Message | None,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[dict]:
    """
    Conversation turns from the root down to `leaf` (inclusive), oldest first.

    Walks parent pointers upward collecting at most `limit` turns. A dangling
    parent pointer truncates the history there; the walk is bounded by the
    number of messages so a corrupted cycle cannot loop forever.
    """
    if leaf is None or limit <= 0 or not thread.messages:
        return []

    by_id = {m.id: m for m in thread.messages}
    collected: list[dict] = []
    current: Message | None = by_id.get(leaf.id)
    hops = 0

    while current is not None and len(collected) < limit and hops < len(thread.messages):
        collected.append({"role": _role(current), "content": current.text or ""})
        hops += 1
        parent_id = current.parent_id
        if parent_id is None or parent_id == ROOT:
            break
        current = by_id.get(parent_id)
        if current is None:
            logger.debug("History for thread %s truncated at dangling parent %s", thread.id, parent_id)

    collected.reverse()
    return collected


def _resolved_time(message: Message) -> float | None:
    parsed = parse_to_utc(message.timestamp)
    return parsed.timestamp() if parsed else None


def latest_active(thread: Thread, exclude: Iterable[str] = ()) -> Message | None:
    """
    The most recent message to continue the conversation from.

    Ordered by (resolved timestamp, insertion index); messages whose timestamp
    cannot be resolved sort before every timestamped one and among themselves
    by insertion order. Ids in `exclude` (placeholders still pending on other
    requests) are never selected.
    """
    excluded = set(exclude)
    best: Message | None = None
    best_key: tuple[float, int] | None = None

    for index, message in enumerate(thread.messages):
        if message.id in excluded:
            continue
        resolved = _resolved_time(message)
        key = (resolved if resolved is not None else float("-inf"), index)
        if best_key is None or key > best_key:
            best, best_key = message, key

    return best


def prune_cancelled(thread: Thread, include_user_turn: bool) -> list[Message]:
    """
    Remove cancelled messages; with `include_user_turn`, also remove any user
    message whose only child is cancelled. Returns the removed messages.
    """
    cancelled = {m.id for m in thread.messages if m.status == MessageStatus.CANCELLED}
    if not cancelled:
        return []

    doomed = set(cancelled)
    if include_user_turn:
        for message in thread.messages:
            if message.sender != Sender.USER or message.id in doomed:
                continue
            kids = children(thread, message.id)
            if len(kids) == 1 and kids[0].id in cancelled:
                doomed.add(message.id)

    removed = [m for m in thread.messages if m.id in doomed]
    thread.messages = [m for m in thread.messages if m.id not in doomed]
    if removed:
        logger.info("Pruned %d cancelled message(s) from thread %s", len(removed), thread.id)
    return removed
