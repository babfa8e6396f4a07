from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.protocol import ChatMessage, SignalEvent, SignalMessage

from .context import SessionContext

logger = logging.getLogger(__name__)

CHAT_HISTORY_LIMIT = 200

ChatNotifier = Callable[[str, Dict[str, Any]], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class ChatEntry:
    message: ChatMessage
    is_local: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = self.message.to_dict()
        data["is_local"] = self.is_local
        return data


class ChatRelay:
    """Fire-and-forget room chat with optimistic local echo."""

    def __init__(
        self,
        context: SessionContext,
        *,
        notify: Optional[ChatNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._context = context
        self._notify = notify
        self._clock = clock
        self._history: List[ChatEntry] = []

    @property
    def history(self) -> List[ChatEntry]:
        return list(self._history)

    async def send(self, text: str) -> Optional[ChatMessage]:
        text = (text or "").strip()
        if not text:
            return None
        message = ChatMessage(
            room_id=self._context.room_id,
            author=self._context.display_name or "Guest",
            text=text,
            sent_at=self._clock(),
            origin_id=self._context.participant_id,
        )
        await self._append(ChatEntry(message, is_local=True))
        await self._context.emit(SignalEvent.SEND_MESSAGE, message.to_dict())
        return message

    async def on_receive(self, message: ChatMessage) -> bool:
        if message.room_id != self._context.room_id:
            return False
        own_id = self._context.participant_id
        if own_id is not None and message.origin_id == own_id:
            return False
        await self._append(ChatEntry(message))
        return True

    async def handle_event(self, event: SignalMessage) -> None:
        try:
            message = ChatMessage.from_dict(event.data)
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropping malformed chat payload %r", event.data)
            return
        await self.on_receive(message)

    async def _append(self, entry: ChatEntry) -> None:
        self._history.append(entry)
        if len(self._history) > CHAT_HISTORY_LIMIT:
            del self._history[: len(self._history) - CHAT_HISTORY_LIMIT]
        if self._notify is None:
            return
        try:
            result = self._notify("chat", entry.to_dict())
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Chat notification failed")
