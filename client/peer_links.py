from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from shared.protocol import ParticipantRole, SignalEvent

from .context import SessionContext
from .media import MediaStream
from .peer_transport import IncomingCall, MediaLink, PeerTransport

logger = logging.getLogger(__name__)

StreamCallback = Callable[[MediaStream], Awaitable[None] | None]


class PeerLinkManager:
    """Establishes direct media links between the host and its viewers.

    Host side: one outbound link per viewer, at most one dial in flight per
    viewer, each dial released after a cool-down so a failed attempt is
    retried on the viewer's next announcement.

    Viewer side: announce presence every interval until a call is accepted;
    a forced refresh re-arms the announcements.
    """

    def __init__(
        self,
        context: SessionContext,
        transport: PeerTransport,
        *,
        on_stream: Optional[StreamCallback] = None,
    ) -> None:
        self._context = context
        self._transport = transport
        self._on_stream = on_stream
        # host side
        self._outbound_stream: Optional[MediaStream] = None
        self._in_flight: Set[str] = set()
        self._dial_tasks: Dict[str, asyncio.Task[None]] = {}
        self._release_handles: Dict[str, asyncio.TimerHandle] = {}
        self._links: Dict[str, MediaLink] = {}
        self._peer_by_participant: Dict[str, str] = {}
        # viewer side
        self._accepted = False
        self._announce_task: Optional[asyncio.Task[None]] = None
        self._inbound_link: Optional[MediaLink] = None
        self._torn_down = False

    @property
    def outbound_stream(self) -> Optional[MediaStream]:
        return self._outbound_stream

    @property
    def links(self) -> Dict[str, MediaLink]:
        return {peer_id: link for peer_id, link in self._links.items() if link.open}

    @property
    def accepted(self) -> bool:
        return self._accepted

    @property
    def announcing(self) -> bool:
        return self._announce_task is not None and not self._announce_task.done()

    @property
    def inbound_link(self) -> Optional[MediaLink]:
        return self._inbound_link

    def is_dial_in_flight(self, peer_id: str) -> bool:
        return peer_id in self._in_flight

    # ------------------------------------------------------------------ host

    def set_outbound_stream(self, stream: Optional[MediaStream]) -> None:
        self._outbound_stream = stream

    def dial(self, participant_id: str, peer_id: Optional[str]) -> bool:
        """Schedule a call to a viewer unless one is already in flight."""

        if self._torn_down or not peer_id:
            return False
        stream = self._outbound_stream
        if stream is None or not stream.active:
            logger.debug("No active broadcast; not dialing %s", peer_id)
            return False
        if peer_id in self._in_flight:
            logger.debug("Dial to %s already in flight", peer_id)
            return False
        self._in_flight.add(peer_id)
        self._peer_by_participant[participant_id] = peer_id
        self._dial_tasks[peer_id] = asyncio.create_task(self._dial(peer_id, stream))
        return True

    async def _dial(self, peer_id: str, stream: MediaStream) -> None:
        settings = self._context.settings
        try:
            if settings.dial_jitter_seconds > 0:
                await asyncio.sleep(settings.dial_jitter_seconds)
            link = await self._transport.call(peer_id, stream)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Dial to %s failed; waiting for next announcement: %s", peer_id, exc)
        else:
            previous = self._links.pop(peer_id, None)
            if previous is not None and previous is not link:
                previous.close()
            self._links[peer_id] = link
            logger.info("Media link %s established with %s", link.link_id, peer_id)
        finally:
            self._dial_tasks.pop(peer_id, None)
            if not self._torn_down and peer_id in self._in_flight:
                loop = asyncio.get_running_loop()
                self._release_handles[peer_id] = loop.call_later(
                    settings.dial_cooldown_seconds, self._release, peer_id
                )

    def _release(self, peer_id: str) -> None:
        self._release_handles.pop(peer_id, None)
        self._in_flight.discard(peer_id)

    def drop_viewer(self, participant_id: str) -> None:
        peer_id = self._peer_by_participant.pop(participant_id, None)
        if peer_id is None:
            return
        self._drop_peer(peer_id)

    def prune_departed(self, present_ids: Iterable[str]) -> List[str]:
        """Drop links to viewers missing from the roster; returns their ids.

        A peer still mapped to a present participant (same transport under a
        new signaling id) keeps its link.
        """

        present = set(present_ids)
        departed = [pid for pid in self._peer_by_participant if pid not in present]
        if not departed:
            return []
        live_peers = {peer for pid, peer in self._peer_by_participant.items() if pid in present}
        for participant_id in departed:
            peer_id = self._peer_by_participant.pop(participant_id)
            if peer_id not in live_peers:
                self._drop_peer(peer_id)
        logger.debug("Pruned links for departed viewers %s", departed)
        return departed

    def _drop_peer(self, peer_id: str) -> None:
        task = self._dial_tasks.pop(peer_id, None)
        if task is not None:
            task.cancel()
        link = self._links.pop(peer_id, None)
        if link is not None:
            link.close()

    def close_links(self) -> None:
        for task in self._dial_tasks.values():
            task.cancel()
        self._dial_tasks.clear()
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        self._in_flight.clear()
        for link in self._links.values():
            link.close()
        self._links.clear()
        self._peer_by_participant.clear()

    # ---------------------------------------------------------------- viewer

    def start_announcing(self) -> bool:
        if self._torn_down or self._accepted or self.announcing:
            return False
        self._announce_task = asyncio.create_task(self._announce_loop())
        return True

    async def announce(self) -> bool:
        return await self._context.emit(
            SignalEvent.JOIN_ROOM,
            {
                "transport_id": self._context.transport_id,
                "display_name": self._context.display_name,
                "role": ParticipantRole.VIEWER.value,
            },
        )

    async def _announce_loop(self) -> None:
        interval = self._context.settings.announce_interval_seconds
        try:
            while not self._accepted:
                await self.announce()
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            return

    def cancel_announcing(self) -> bool:
        """Stop the announce timer; returns False if it was already stopped."""

        task = self._announce_task
        if task is None:
            return False
        self._announce_task = None
        task.cancel()
        logger.debug("Stopped presence announcements")
        return True

    async def accept_call(self, call: IncomingCall) -> bool:
        if self._torn_down or self._accepted:
            logger.debug("Ignoring call from %s; link already accepted", call.caller_id)
            return False
        self._accepted = True
        self.cancel_announcing()
        stream = await call.answer()
        if self._inbound_link is not None and self._inbound_link is not call.link:
            self._inbound_link.close()
        self._inbound_link = call.link
        logger.info("Accepted media link %s from %s", call.link.link_id, call.caller_id)
        if self._on_stream is not None:
            result = self._on_stream(stream)
            if asyncio.iscoroutine(result):
                await result
        return True

    def reset_link(self) -> None:
        self._accepted = False
        if self._inbound_link is not None:
            self._inbound_link.close()
            self._inbound_link = None

    def handle_forced_refresh(self) -> bool:
        if self._torn_down:
            return False
        self.reset_link()
        return self.start_announcing()

    # ---------------------------------------------------------------- common

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self.cancel_announcing()
        self.close_links()
        self.reset_link()
        self._outbound_stream = None
        try:
            await self._transport.destroy()
        except Exception:
            logger.exception("Error while destroying peer transport")
