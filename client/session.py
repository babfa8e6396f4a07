"""Top-level session orchestration for one participant.

:class:`SessionLifecycleController` owns login, transport initialisation,
room join, broadcast start/stop, termination and kick handling, and
reconnection of the signaling channel. It wires the signaling events to
:class:`~client.peer_links.PeerLinkManager`, the sync state machines,
:class:`~client.roster.RosterView` and :class:`~client.chat.ChatRelay`, and
fans state changes out to listeners such as the local UI bridge.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.protocol import (
    ParticipantRole,
    SessionStateError,
    SignalEvent,
    SignalMessage,
    SyncState,
)

from .chat import ChatRelay
from .context import SessionContext
from .media import CaptureUnsupportedError, MediaElement, MediaStream
from .peer_links import PeerLinkManager
from .peer_transport import PeerTransport
from .playback_sync import HostSyncMachine, ViewerSyncMachine
from .roster import RosterView

logger = logging.getLogger(__name__)

SessionListener = Callable[[str, Dict[str, Any]], Awaitable[None] | None]


class SessionLifecycleController:
    def __init__(
        self,
        context: SessionContext,
        *,
        element: MediaElement,
        transport: PeerTransport,
    ) -> None:
        self._context = context
        self._element = element
        self._transport = transport
        self._listeners: List[SessionListener] = []
        self._unsubscribers: List[Callable[[], None]] = []
        self._logged_in = False
        self._joined = False
        self._kicked = False
        self._torn_down = False
        self._should_reconnect = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempt = 0
        self.host_name: Optional[str] = None
        self.last_error: Optional[Dict[str, Any]] = None
        self.roster = RosterView(context.room_id)
        self.chat = ChatRelay(context, notify=self._notify)
        self.links = PeerLinkManager(context, transport, on_stream=self._on_stream)
        self.host: Optional[HostSyncMachine] = None
        self.viewer: Optional[ViewerSyncMachine] = None
        if context.is_host:
            self.host = HostSyncMachine(context, element, notify=self._notify, on_capture=self._on_capture)
        else:
            self.viewer = ViewerSyncMachine(context, element, notify=self._notify)

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def element(self) -> MediaElement:
        return self._element

    @property
    def logged_in(self) -> bool:
        return self._logged_in

    @property
    def joined(self) -> bool:
        return self._joined

    @property
    def kicked(self) -> bool:
        return self._kicked

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------ lifecycle

    def login(self, display_name: str) -> str:
        if self._logged_in:
            raise SessionStateError("Display name already set for this session")
        name = (display_name or "").strip()
        if not name:
            raise ValueError("Display name must not be empty")
        self._context.display_name = name
        self._logged_in = True
        return name

    async def initialize_transport(self) -> str:
        """Connect signaling and open the peer transport; returns the transport id."""

        if not self._logged_in:
            raise SessionStateError("Log in before initializing the transport")
        if self._torn_down:
            raise SessionStateError("Session has been torn down")
        signaling = self._context.signaling
        if not signaling.connected:
            await signaling.connect()
        signaling.set_disconnect_callback(self._on_signaling_disconnect)
        transport_id = await self._transport.open()
        self._transport.on_call(self.links.accept_call if not self._context.is_host else None)
        self._context.transport_id = transport_id
        self.roster.self_id = signaling.client_id
        logger.info(
            "Session %s ready as %s (signaling %s, transport %s)",
            self._context.room_id,
            self._context.role.value,
            signaling.client_id,
            transport_id,
        )
        return transport_id

    async def join_room(self) -> None:
        if self._kicked or self._torn_down:
            raise SessionStateError("Session is no longer active")
        if self._context.transport_id is None:
            raise SessionStateError("Peer transport must be initialized before joining a room")
        if self._joined:
            return
        self._subscribe()
        self._joined = True
        self._should_reconnect = True
        await self._announce_membership()
        await self._notify("session_status", {"state": "joined", "room_id": self._context.room_id})

    async def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._should_reconnect = False
        self._cancel_reconnect()
        if self.host is not None and self.host.is_broadcasting:
            await self.host.stop_broadcast()
        if self._joined and not self._kicked:
            await self._context.emit(SignalEvent.LEAVE_ROOM)
        await self.links.teardown()
        self._unsubscribe()
        signaling = self._context.signaling
        signaling.set_disconnect_callback(None)
        try:
            await signaling.close()
        except Exception:
            logger.exception("Error while closing signaling client")
        await self._notify("session_status", {"state": "closed", "room_id": self._context.room_id})

    # ----------------------------------------------------------------- host

    async def load_media(self, source: str) -> None:
        await self._require_host().load_media(source)

    async def start_broadcast(self) -> MediaStream:
        host = self._require_host()
        try:
            return await host.start_broadcast()
        except CaptureUnsupportedError as exc:
            logger.error("Cannot start broadcast: %s", exc)
            await self._report_error(str(exc), "capture_unsupported")
            raise

    async def stop_broadcast(self) -> bool:
        return await self._require_host().stop_broadcast()

    async def kick(self, participant_id: str) -> bool:
        self._require_host()
        if not participant_id or participant_id == self._context.participant_id:
            return False
        self.links.drop_viewer(participant_id)
        return await self._context.emit(SignalEvent.KICK_USER, {"target_id": participant_id})

    # --------------------------------------------------------------- viewer

    async def perform_gesture(self) -> bool:
        if self.viewer is None:
            self._element.grant_user_activation()
            return False
        return await self.viewer.perform_gesture()

    # ---------------------------------------------------------------- local

    async def play(self) -> None:
        if self._kicked or not self._element.has_source:
            return
        await self._element.play()

    async def pause(self) -> None:
        if self._kicked:
            return
        await self._element.pause()

    async def seek(self, seconds: float) -> None:
        if self._kicked:
            return
        await self._element.seek(seconds)

    async def send_chat(self, text: str) -> bool:
        if self._kicked or not self._joined:
            return False
        return await self.chat.send(text) is not None

    def snapshot(self) -> Dict[str, Any]:
        machine = self.host or self.viewer
        data: Dict[str, Any] = {
            "room_id": self._context.room_id,
            "role": self._context.role.value,
            "display_name": self._context.display_name,
            "participant_id": self._context.participant_id,
            "transport_id": self._context.transport_id,
            "joined": self._joined,
            "kicked": self._kicked,
            "host_name": self.host_name,
            "state": machine.state.value if machine else None,
            "position_seconds": self._element.current_time,
            "paused": self._element.paused,
            "muted": self._element.muted,
            "roster": self.roster.to_dict(),
            "chat_history": [entry.to_dict() for entry in self.chat.history],
        }
        if self.viewer is not None:
            data["host_state"] = self.viewer.host_state.to_dict()
            data["locally_paused"] = self.viewer.locally_paused
        return data

    # ------------------------------------------------------------- handlers

    def _subscribe(self) -> None:
        signaling = self._context.signaling
        common = {
            SignalEvent.UPDATE_USER_LIST: self._on_roster,
            SignalEvent.RECEIVE_MESSAGE: self.chat.handle_event,
            SignalEvent.ERROR: self._on_error,
        }
        if self._context.is_host:
            role_handlers = {
                SignalEvent.USER_CONNECTED: self._on_user_connected,
                SignalEvent.ASK_SYNC_DATA: self._on_ask_sync_data,
                SignalEvent.ASK_HOST_NAME: self._on_ask_host_name,
                SignalEvent.VIEWER_STATUS_UPDATE: self._on_viewer_status,
            }
        else:
            role_handlers = {
                SignalEvent.VIDEO_SYNC: self._on_video_sync,
                SignalEvent.BROADCAST_STOPPED: self._on_broadcast_stopped,
                SignalEvent.KICKED: self._on_kicked,
                SignalEvent.STREAM_FORCED_REFRESH: self._on_forced_refresh,
                SignalEvent.RETURN_HOST_NAME: self._on_host_name,
                SignalEvent.HOST_JOINED: self._on_host_name,
                SignalEvent.HOST_STARTED_STREAM: self._on_host_name,
            }
        for event, handler in {**common, **role_handlers}.items():
            self._unsubscribers.append(signaling.on(event, handler))

    def _unsubscribe(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    async def _on_roster(self, message: SignalMessage) -> None:
        if not self.roster.apply(message.data):
            return
        if self._context.is_host:
            self.links.prune_departed(viewer.participant_id for viewer in self.roster.viewers)
        await self._notify("roster", self.roster.to_dict())

    async def _on_error(self, message: SignalMessage) -> None:
        logger.warning("Relay error %s: %s", message.data.get("code"), message.data.get("reason"))
        await self._notify("error", dict(message.data))

    async def _on_user_connected(self, message: SignalMessage) -> None:
        participant_id = message.data.get("participant_id") or message.sender
        if not participant_id:
            return
        self.links.dial(str(participant_id), message.data.get("transport_id"))

    async def _on_ask_sync_data(self, message: SignalMessage) -> None:
        requester_id = message.data.get("requester_id") or message.sender
        if self.host is None or not requester_id:
            return
        await self.host.answer_sync_request(str(requester_id))

    async def _on_ask_host_name(self, message: SignalMessage) -> None:
        requester_id = message.data.get("requester_id") or message.sender
        if not requester_id:
            return
        await self._context.emit(
            SignalEvent.RETURN_HOST_NAME,
            {"name": self._context.display_name, "requester_id": requester_id},
            target=str(requester_id),
        )

    async def _on_viewer_status(self, message: SignalMessage) -> None:
        await self._notify(
            "viewer_status",
            {"participant_id": message.sender, "status": message.data.get("status")},
        )

    async def _on_video_sync(self, message: SignalMessage) -> None:
        if self.viewer is None:
            return
        try:
            state = SyncState.from_dict(message.data)
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropping malformed video-sync %r", message.data)
            return
        await self.viewer.on_video_sync(state)

    async def _on_broadcast_stopped(self, message: SignalMessage) -> None:
        if self.viewer is None or self._kicked:
            return
        logger.info("Host ended the broadcast in room %s", self._context.room_id)
        self.links.reset_link()
        await self.viewer.end()

    async def _on_kicked(self, message: SignalMessage) -> None:
        if self._kicked:
            return
        self._kicked = True
        self._should_reconnect = False
        self._cancel_reconnect()
        logger.warning("Removed from room %s by the host", self._context.room_id)
        if self.viewer is not None:
            await self.viewer.kick()
        await self._context.emit(SignalEvent.LEAVE_ROOM)
        await self.links.teardown()
        self._unsubscribe()
        await self._notify(
            "session_status",
            {"state": "kicked", "room_id": self._context.room_id, "message": message.data.get("reason")},
        )

    async def _on_forced_refresh(self, message: SignalMessage) -> None:
        if self.viewer is None or self._kicked or self._torn_down:
            return
        self.viewer.await_new_link()
        if not self.links.handle_forced_refresh():
            await self.links.announce()

    async def _on_host_name(self, message: SignalMessage) -> None:
        name = message.data.get("name") or message.data.get("display_name")
        if not name or name == self.host_name:
            return
        self.host_name = str(name)
        await self._notify("host_name", {"name": self.host_name})

    async def _on_stream(self, stream: MediaStream) -> None:
        if self.viewer is not None:
            await self.viewer.on_stream(stream)

    def _on_capture(self, stream: Optional[MediaStream]) -> None:
        if stream is None:
            self.links.close_links()
        self.links.set_outbound_stream(stream)

    # ------------------------------------------------------------ reconnect

    async def _announce_membership(self) -> None:
        context = self._context
        self.roster.self_id = context.participant_id
        if context.is_host:
            await context.emit(
                SignalEvent.JOIN_ROOM,
                {
                    "transport_id": context.transport_id,
                    "display_name": context.display_name,
                    "role": ParticipantRole.HOST.value,
                },
            )
            await context.emit(SignalEvent.HOST_JOINED, {"display_name": context.display_name})
            if self.host is not None and self.host.is_broadcasting:
                await self.host.announce_broadcast()
            return
        if self.links.accepted:
            started = self.links.handle_forced_refresh()
        else:
            started = self.links.start_announcing()
        if not started:
            # announce loop already running; do not wait for its next tick
            await self.links.announce()
        await context.emit(SignalEvent.ASK_HOST_NAME)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is None:
            return
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not asyncio.current_task():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        delay = self._context.settings.reconnect_delay(self._reconnect_attempt)
        self._reconnect_attempt += 1

        async def _worker(delay_seconds: float) -> None:
            try:
                if delay_seconds > 0:
                    await asyncio.sleep(delay_seconds)
                if not self._should_reconnect:
                    return
                await self._reconnect()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reconnect attempt failed")
                self._reconnect_task = None
                if self._should_reconnect:
                    self._schedule_reconnect()
            finally:
                if self._reconnect_task is asyncio.current_task():
                    self._reconnect_task = None

        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._reconnect_attempt)
        self._reconnect_task = asyncio.create_task(_worker(delay))

    async def _reconnect(self) -> None:
        await self._notify("session_status", {"state": "connecting", "room_id": self._context.room_id})
        await self._context.signaling.connect()
        self._reconnect_attempt = 0
        await self._announce_membership()
        logger.info("Rejoined room %s as %s", self._context.room_id, self._context.participant_id)
        await self._notify("session_status", {"state": "joined", "room_id": self._context.room_id})

    async def _on_signaling_disconnect(self, reason: Optional[str]) -> None:
        if not self._should_reconnect:
            return
        if reason:
            logger.warning("Signaling connection lost: %s", reason)
        else:
            logger.warning("Signaling connection lost")
        await self._notify(
            "session_status",
            {"state": "reconnecting", "room_id": self._context.room_id, "message": reason},
        )
        self._schedule_reconnect()

    # -------------------------------------------------------------- helpers

    def _require_host(self) -> HostSyncMachine:
        if self.host is None:
            raise SessionStateError("Only the host can control the broadcast")
        if self._torn_down:
            raise SessionStateError("Session has been torn down")
        return self.host

    async def _report_error(self, reason: str, code: str) -> None:
        self.last_error = {"reason": reason, "code": code}
        await self._notify("error", dict(self.last_error))

    async def _notify(self, kind: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(kind, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Session listener failed for %s", kind)
