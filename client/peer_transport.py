"""Direct host-to-viewer media links.

A :class:`PeerTransport` is one participant's endpoint for call-and-answer
media links. Opening it yields the transport id other participants dial.
:class:`LoopbackPeerNetwork` connects endpoints living in the same process.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .media import MediaStream

logger = logging.getLogger(__name__)


class PeerLinkError(ConnectionError):
    """A media link could not be established."""


@dataclass(slots=True)
class MediaLink:
    link_id: str
    caller_id: str
    callee_id: str
    stream: MediaStream
    open: bool = True

    def close(self) -> None:
        if self.open:
            self.open = False
            logger.debug("Closed media link %s (%s -> %s)", self.link_id, self.caller_id, self.callee_id)


@dataclass(slots=True)
class IncomingCall:
    link: MediaLink
    answered: bool = field(default=False)

    @property
    def caller_id(self) -> str:
        return self.link.caller_id

    async def answer(self) -> MediaStream:
        self.answered = True
        return self.link.stream


CallHandler = Callable[[IncomingCall], Awaitable[object] | object]


class PeerTransport(ABC):
    """Endpoint for direct media links."""

    @property
    @abstractmethod
    def transport_id(self) -> Optional[str]:
        ...

    @abstractmethod
    async def open(self) -> str:
        """Register the endpoint and return the id other participants dial."""

    @abstractmethod
    async def call(self, peer_id: str, stream: MediaStream) -> MediaLink:
        """Offer ``stream`` to ``peer_id``; raises PeerLinkError when unanswered."""

    @abstractmethod
    def on_call(self, handler: Optional[CallHandler]) -> None:
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Close every link and unregister the endpoint."""


class LoopbackPeerTransport(PeerTransport):
    def __init__(self, network: "LoopbackPeerNetwork") -> None:
        self._network = network
        self._transport_id: Optional[str] = None
        self._handler: Optional[CallHandler] = None
        self._links: List[MediaLink] = []

    @property
    def transport_id(self) -> Optional[str]:
        return self._transport_id

    @property
    def open_link_count(self) -> int:
        return sum(1 for link in self._links if link.open)

    @property
    def known_link_count(self) -> int:
        return len(self._links)

    @property
    def destroyed(self) -> bool:
        return self._transport_id is None

    async def open(self) -> str:
        if self._transport_id is None:
            self._transport_id = self._network._register(self)
        return self._transport_id

    def on_call(self, handler: Optional[CallHandler]) -> None:
        self._handler = handler

    async def call(self, peer_id: str, stream: MediaStream) -> MediaLink:
        if self._transport_id is None:
            raise PeerLinkError("Peer transport is not open")
        if not stream.active:
            raise PeerLinkError("Cannot call with an inactive stream")
        self._network.call_log.append((self._transport_id, peer_id))
        callee = self._network._lookup(peer_id)
        if callee is None:
            raise PeerLinkError(f"Peer {peer_id} is unreachable")
        link = MediaLink(
            link_id=self._network._next_link_id(),
            caller_id=self._transport_id,
            callee_id=peer_id,
            stream=stream,
        )
        call = IncomingCall(link=link)
        await callee._incoming(call)
        if not call.answered:
            link.close()
            raise PeerLinkError(f"Peer {peer_id} did not answer")
        self._remember(link)
        callee._remember(link)
        return link

    async def destroy(self) -> None:
        if self._transport_id is None:
            return
        for link in self._links:
            link.close()
        self._links.clear()
        self._network._unregister(self._transport_id)
        self._transport_id = None
        self._handler = None

    def _remember(self, link: MediaLink) -> None:
        self._links = [known for known in self._links if known.open]
        self._links.append(link)

    async def _incoming(self, call: IncomingCall) -> None:
        handler = self._handler
        if handler is None:
            logger.debug("No call handler on %s; dropping call from %s", self._transport_id, call.caller_id)
            return
        try:
            result = handler(call)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Incoming call handler failed on %s", self._transport_id)


class LoopbackPeerNetwork:
    """Registry connecting loopback transports of one process."""

    def __init__(self) -> None:
        self._endpoints: Dict[str, LoopbackPeerTransport] = {}
        self._ids = itertools.count(1)
        self._link_ids = itertools.count(1)
        self.unreachable: Set[str] = set()
        self.call_log: List[Tuple[str, str]] = []

    def create_transport(self) -> LoopbackPeerTransport:
        return LoopbackPeerTransport(self)

    def calls_to(self, peer_id: str) -> int:
        return sum(1 for _, callee in self.call_log if callee == peer_id)

    def _register(self, transport: LoopbackPeerTransport) -> str:
        transport_id = f"peer-{next(self._ids)}"
        self._endpoints[transport_id] = transport
        return transport_id

    def _unregister(self, transport_id: str) -> None:
        self._endpoints.pop(transport_id, None)

    def _lookup(self, peer_id: str) -> Optional[LoopbackPeerTransport]:
        if peer_id in self.unreachable:
            return None
        return self._endpoints.get(peer_id)

    def _next_link_id(self) -> str:
        return f"link-{next(self._link_ids)}"
