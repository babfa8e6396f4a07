"""Typed publish/subscribe surface over the signaling channel.

Components never talk to a concrete transport. They subscribe handlers by
:class:`SignalEvent` and emit events through a :class:`SignalingClient`;
tests inject synthetic :class:`SignalMessage` objects through
:meth:`SignalingClient.deliver` without any transport at all.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from shared.protocol import SignalEvent, SignalMessage

logger = logging.getLogger(__name__)

EventHandler = Callable[[SignalMessage], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class EventDispatcher:
    """Routes decoded messages to the handlers registered for their event."""

    def __init__(self) -> None:
        self._handlers: Dict[SignalEvent, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event: SignalEvent, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event, handler)

        return _unsubscribe

    def unsubscribe(self, event: SignalEvent, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event: SignalEvent) -> int:
        return len(self._handlers.get(event, ()))

    async def dispatch(self, message: SignalMessage) -> None:
        handlers = list(self._handlers.get(message.event, ()))
        if not handlers:
            logger.debug("No handler for %s", message.event.value)
            return
        for handler in handlers:
            try:
                result = handler(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error while handling signaling event %s", message.event.value)


class SignalingClient(ABC):
    """Base adapter between a participant and the rendezvous relay.

    Subclasses implement :meth:`connect`, :meth:`close` and :meth:`_send`
    and feed inbound traffic through :meth:`deliver`.
    """

    def __init__(self) -> None:
        self._dispatcher = EventDispatcher()
        self._client_id: Optional[str] = None
        self._on_disconnect: Optional[DisconnectCallback] = None

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def connected(self) -> bool:
        return self._client_id is not None

    def on(self, event: SignalEvent, handler: EventHandler) -> Callable[[], None]:
        return self._dispatcher.subscribe(event, handler)

    def off(self, event: SignalEvent, handler: EventHandler) -> None:
        self._dispatcher.unsubscribe(event, handler)

    def set_disconnect_callback(self, callback: Optional[DisconnectCallback]) -> None:
        self._on_disconnect = callback

    @abstractmethod
    async def connect(self) -> str:
        """Open the channel and return the relay-assigned connection id."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel without reporting a disconnect."""

    async def emit(
        self,
        event: SignalEvent,
        data: Optional[Mapping[str, Any]] = None,
        *,
        target: Optional[str] = None,
    ) -> None:
        message = SignalMessage(
            event=event,
            data=dict(data or {}),
            sender=self._client_id,
            target=target,
        )
        await self._send(message)

    async def deliver(self, message: SignalMessage) -> None:
        await self._dispatcher.dispatch(message)

    @abstractmethod
    async def _send(self, message: SignalMessage) -> None:
        """Hand one outbound message to the transport."""

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")
