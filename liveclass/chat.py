from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional

from liveclass_shared.protocol import ChatMessage, dedupe_backlog

logger = logging.getLogger(__name__)

CHAT_MATCH_WINDOW_SECONDS = 1.0
MAX_CHAT_HISTORY = 500


class ChatLog:
    """Ordered chat log reconciling optimistic local echoes with server broadcasts.

    A sent message is shown immediately as a provisional entry (no permanent id).
    When the server broadcast for it arrives, every provisional entry from the
    same sender with the same text and a timestamp inside the match window is
    dropped, and the broadcast is appended unless its permanent id is already
    present (a replay after reconnect). Authoritative entries keep receipt order.
    """

    def __init__(
        self,
        self_id: str,
        *,
        match_window: float = CHAT_MATCH_WINDOW_SECONDS,
        max_entries: int = MAX_CHAT_HISTORY,
    ) -> None:
        self._self_id = self_id
        self._window = match_window
        self._max_entries = max(1, max_entries)
        self._messages: List[ChatMessage] = []
        self._panel_open = False
        self._unread = 0

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def unread_count(self) -> int:
        return self._unread

    def __len__(self) -> int:
        return len(self._messages)

    def load_backlog(self, messages: Iterable[ChatMessage], *, unread_count: Optional[int] = None) -> None:
        """Replace the log with the join-time backlog, deduplicated."""
        incoming = list(messages)
        unique = dedupe_backlog(incoming)
        dropped = len(incoming) - len(unique)
        self._messages = unique[-self._max_entries :]
        if unread_count is not None:
            self._unread = max(0, unread_count)
        else:
            self._unread = sum(1 for message in self._messages if message.sender_id != self._self_id)
        logger.debug("Loaded %d backlog messages (%d duplicates dropped)", len(self._messages), dropped)

    def add_optimistic(
        self,
        text: str,
        *,
        sender_name: str = "You",
        sender_role: str = "student",
        timestamp: Optional[float] = None,
    ) -> ChatMessage:
        message = ChatMessage(
            sender_id=self._self_id,
            sender_name=sender_name,
            sender_role=sender_role,
            text=text,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        self._append(message)
        return message

    def receive(self, message: ChatMessage) -> bool:
        """Apply an authoritative broadcast. Returns True when it was appended."""
        if message.is_provisional:
            raise ValueError("Authoritative chat messages must carry a permanent id")

        before = len(self._messages)
        self._messages = [entry for entry in self._messages if not self._supersedes(message, entry)]
        replaced = before - len(self._messages)
        if replaced:
            logger.debug("Replaced %d optimistic entries with %s", replaced, message.message_id)

        if any(entry.message_id == message.message_id for entry in self._messages):
            logger.debug("Duplicate chat message %s ignored", message.message_id)
            return False

        self._append(message)
        if message.sender_id != self._self_id and not self._panel_open:
            self._unread += 1
        return True

    def open_panel(self) -> None:
        self._panel_open = True
        self._unread = 0

    def close_panel(self) -> None:
        self._panel_open = False

    def clear(self) -> None:
        self._messages = []
        self._unread = 0

    def _supersedes(self, authoritative: ChatMessage, entry: ChatMessage) -> bool:
        return (
            entry.is_provisional
            and entry.sender_id == authoritative.sender_id
            and entry.text == authoritative.text
            and abs(entry.timestamp - authoritative.timestamp) <= self._window
        )

    def _append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        overflow = len(self._messages) - self._max_entries
        if overflow > 0:
            del self._messages[:overflow]
