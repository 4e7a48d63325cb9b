"""Client-side merge of pushed and fetched messages.

The realtime socket delivers each message at least once and a reconnecting
client fills the gap with ``sync`` from its checkpoint. ``ConversationView``
is the consumer side that protocol expects: the helper a client (or a test
client) keeps per conversation, next to ``TypingIndicator`` for typing pings.
"""
from __future__ import annotations

import bisect
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .events import MessageAppended


class ConversationView:
    """Client-side copy of one conversation.

    Pushes can arrive twice, late, or before the history fetch that should
    have contained them. Messages are merged by id and kept sorted by
    ``(created_at, id)``, so applying anything more than once is harmless.
    """

    def __init__(self, match_id: int) -> None:
        self.match_id = match_id
        self._by_id: Dict[int, MessageAppended] = {}
        self._order: List[Tuple[datetime, int]] = []

    def apply(self, message: MessageAppended) -> bool:
        """Merge one message. False when it was already known or belongs elsewhere."""
        if message.match_id != self.match_id or message.id in self._by_id:
            return False
        self._by_id[message.id] = message
        bisect.insort(self._order, (message.created_at, message.id))
        return True

    def extend(self, messages: Iterable[MessageAppended]) -> int:
        return sum(1 for message in messages if self.apply(message))

    @property
    def messages(self) -> List[MessageAppended]:
        return [self._by_id[message_id] for _, message_id in self._order]

    @property
    def checkpoint(self) -> Tuple[Optional[datetime], Optional[int]]:
        """``(since, since_id)`` to request the gap after a reconnect."""
        if not self._order:
            return None, None
        return self._order[-1]

    def __len__(self) -> int:
        return len(self._order)
