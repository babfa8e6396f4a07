"""Host and viewer playback synchronization state machines.

The host owns the single authoritative :class:`SyncState` of a room and
publishes it on every local play/pause/seek. Viewers cache the latest state
and reconcile against it once the user has performed the gesture the
autoplay policy demands: position is snapped when it drifts beyond the
tolerance, play/pause follows the host unless the viewer paused locally.

Remote-driven mutations arm an :class:`EchoSuppressor` so the viewer's own
play/pause observers do not report them back to the room.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from shared.protocol import (
    PlaybackMode,
    SessionStateError,
    SignalEvent,
    SyncState,
    ViewerStatus,
)

from .context import SessionContext
from .media import (
    PAUSE_EVENT,
    PLAY_EVENT,
    SEEKED_EVENT,
    AutoplayBlockedError,
    MediaElement,
    MediaStream,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Dict[str, object]], Awaitable[None] | None]
CaptureHook = Callable[[Optional[MediaStream]], None]


class HostState(str, Enum):
    IDLE = "idle"
    MEDIA_LOADED = "media_loaded"
    BROADCASTING_LIVE = "broadcasting_live"
    BROADCASTING_PAUSED = "broadcasting_paused"


class ViewerState(str, Enum):
    AWAITING_LINK = "awaiting_link"
    LINK_ESTABLISHED = "link_established"
    READY_GESTURE_PENDING = "ready_gesture_pending"
    WATCHING = "watching"
    PAUSED = "paused"
    ENDED = "ended"
    KICKED = "kicked"


BROADCASTING_STATES = frozenset({HostState.BROADCASTING_LIVE, HostState.BROADCASTING_PAUSED})
SYNCED_STATES = frozenset({ViewerState.WATCHING, ViewerState.PAUSED})


class EchoSuppressor:
    """Short-lived flag marking playback changes as remote-caused."""

    def __init__(self, window_seconds: float) -> None:
        self._window = window_seconds
        self._active = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._active

    def arm(self) -> None:
        self._active = True
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self._window, self._clear)

    def reset(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._clear()

    def _clear(self) -> None:
        self._active = False
        self._handle = None


async def _call_notifier(notify: Optional[Notifier], kind: str, payload: Dict[str, object]) -> None:
    if notify is None:
        return
    try:
        result = notify(kind, payload)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.exception("State notification %s failed", kind)


class HostSyncMachine:
    def __init__(
        self,
        context: SessionContext,
        element: MediaElement,
        *,
        notify: Optional[Notifier] = None,
        on_capture: Optional[CaptureHook] = None,
    ) -> None:
        self._context = context
        self._element = element
        self._notify = notify
        self._on_capture = on_capture
        self._state = HostState.IDLE
        self._authoritative: Optional[SyncState] = None
        self._capture: Optional[MediaStream] = None
        element.add_listener(self._on_media_event)

    @property
    def state(self) -> HostState:
        return self._state

    @property
    def is_broadcasting(self) -> bool:
        return self._state in BROADCASTING_STATES

    @property
    def authoritative_state(self) -> Optional[SyncState]:
        return self._authoritative

    @property
    def capture(self) -> Optional[MediaStream]:
        return self._capture

    async def load_media(self, source: str) -> None:
        if self.is_broadcasting:
            raise SessionStateError("Cannot change media while broadcasting")
        self._element.load(source)
        self._element.grant_user_activation()
        await self._set_state(HostState.MEDIA_LOADED)

    async def start_broadcast(self) -> MediaStream:
        """Capture the loaded media and publish the initial authoritative state.

        Raises :class:`~client.media.CaptureUnsupportedError` when the local
        pipeline cannot produce a stream; nothing is published in that case.
        """

        if self.is_broadcasting and self._capture is not None:
            return self._capture
        if self._state is HostState.IDLE or not self._element.has_source:
            raise SessionStateError("Load media before starting a broadcast")
        stream = self._element.capture_stream(self._context.settings.capture_frame_rate)
        self._capture = stream
        if self._on_capture is not None:
            self._on_capture(stream)
        self._element.muted = False
        self._authoritative = self._snapshot()
        await self._set_state(self._broadcast_state_for(self._authoritative.mode))
        logger.info(
            "Broadcast started in room %s at %.2fs (%s)",
            self._context.room_id,
            self._authoritative.position_seconds,
            self._authoritative.mode.value,
        )
        await self.announce_broadcast()
        return stream

    async def announce_broadcast(self) -> None:
        """Tell the room a stream is live and ask waiting viewers to re-announce."""

        if not self.is_broadcasting:
            return
        await self._context.emit(
            SignalEvent.HOST_STARTED_STREAM,
            {"display_name": self._context.display_name},
        )
        await self.publish()
        await self._context.emit(SignalEvent.STREAM_FORCED_REFRESH)

    async def stop_broadcast(self) -> bool:
        if not self.is_broadcasting:
            return False
        if self._capture is not None:
            self._capture.stop()
            self._capture = None
        if self._on_capture is not None:
            self._on_capture(None)
        self._authoritative = None
        await self._set_state(HostState.MEDIA_LOADED)
        await self._element.pause()
        await self._element.seek(0.0)
        await self._context.emit(SignalEvent.STOP_BROADCAST)
        logger.info("Broadcast stopped in room %s", self._context.room_id)
        return True

    async def publish(self, target_id: Optional[str] = None) -> bool:
        state = self._authoritative
        if state is None:
            return False
        payload: Dict[str, object] = dict(state.to_dict())
        if target_id:
            payload["target_id"] = target_id
        return await self._context.emit(SignalEvent.VIDEO_SYNC, payload, target=target_id)

    async def answer_sync_request(self, requester_id: str) -> bool:
        """Reply to one viewer with the live element state, leaving others alone."""

        if not self.is_broadcasting:
            return False
        self._authoritative = self._snapshot()
        return await self.publish(target_id=requester_id)

    async def _on_media_event(self, kind: str) -> None:
        if not self.is_broadcasting:
            return
        if kind not in (PLAY_EVENT, PAUSE_EVENT, SEEKED_EVENT):
            return
        self._authoritative = self._snapshot()
        await self._set_state(self._broadcast_state_for(self._authoritative.mode))
        await self.publish()

    def _snapshot(self) -> SyncState:
        mode = PlaybackMode.PAUSE if self._element.paused else PlaybackMode.PLAY
        return SyncState(mode=mode, position_seconds=self._element.current_time, origin_timestamp=time.time())

    @staticmethod
    def _broadcast_state_for(mode: PlaybackMode) -> HostState:
        return HostState.BROADCASTING_LIVE if mode is PlaybackMode.PLAY else HostState.BROADCASTING_PAUSED

    async def _set_state(self, state: HostState) -> None:
        if state is self._state:
            return
        logger.debug("Host state %s -> %s", self._state.value, state.value)
        self._state = state
        await _call_notifier(self._notify, "state", {"role": "host", "state": state.value})


class ViewerSyncMachine:
    def __init__(self, context: SessionContext, element: MediaElement, *, notify: Optional[Notifier] = None) -> None:
        self._context = context
        self._element = element
        self._notify = notify
        self._state = ViewerState.AWAITING_LINK
        self.host_state = SyncState(mode=PlaybackMode.PAUSE, position_seconds=0.0, origin_timestamp=0.0)
        self.locally_paused = False
        self._gesture_granted = False
        self._last_reported: Optional[ViewerStatus] = None
        self.echo = EchoSuppressor(context.settings.echo_suppression_seconds)
        element.add_listener(self._on_media_event)

    @property
    def state(self) -> ViewerState:
        return self._state

    @property
    def is_synced(self) -> bool:
        return self._state in SYNCED_STATES

    @property
    def last_reported_status(self) -> Optional[ViewerStatus]:
        return self._last_reported

    async def on_stream(self, stream: MediaStream) -> None:
        if self._state is ViewerState.KICKED:
            return
        self._element.attach_stream(stream)
        self._element.muted = True
        await self._set_state(ViewerState.LINK_ESTABLISHED)
        self.echo.arm()
        try:
            await self._element.play()
        except AutoplayBlockedError:
            logger.debug("Muted autoplay rejected; waiting for user interaction")
        await self._context.emit(SignalEvent.REQUEST_SYNC)
        if self._gesture_granted:
            await self._enter_synced()
        else:
            await self._set_state(ViewerState.READY_GESTURE_PENDING)

    async def perform_gesture(self) -> bool:
        """The user pressed play: unmute and start following the host."""

        if self._state is ViewerState.KICKED:
            return False
        self._gesture_granted = True
        self._element.grant_user_activation()
        if self._state not in (ViewerState.LINK_ESTABLISHED, ViewerState.READY_GESTURE_PENDING):
            return False
        await self._enter_synced()
        return True

    async def on_video_sync(self, incoming: SyncState) -> bool:
        if self._state is ViewerState.KICKED:
            return False
        if incoming.origin_timestamp < self.host_state.origin_timestamp:
            logger.debug(
                "Dropping stale sync %.3f older than %.3f",
                incoming.origin_timestamp,
                self.host_state.origin_timestamp,
            )
            return False
        self.host_state = incoming
        if not self.is_synced:
            return False
        await self._reconcile()
        return True

    async def end(self) -> None:
        if self._state is ViewerState.KICKED:
            return
        await self._set_state(ViewerState.ENDED)
        self.echo.reset()
        self.locally_paused = False
        self._last_reported = None
        await self._element.pause()
        self._element.clear_source()

    def await_new_link(self) -> bool:
        if self._state is not ViewerState.ENDED:
            return False
        self._state = ViewerState.AWAITING_LINK
        return True

    async def kick(self) -> bool:
        if self._state is ViewerState.KICKED:
            return False
        await self._set_state(ViewerState.KICKED)
        self.echo.reset()
        await self._element.pause()
        self._element.clear_source()
        return True

    async def _enter_synced(self) -> None:
        self._element.muted = False
        await self._reconcile(force_report=True)

    async def _reconcile(self, *, force_report: bool = False) -> None:
        target = self.host_state
        element = self._element
        tolerance = self._context.settings.drift_tolerance_seconds
        if abs(element.current_time - target.position_seconds) > tolerance:
            self.echo.arm()
            await element.seek(target.position_seconds)

        if target.mode is PlaybackMode.PAUSE:
            if not element.paused:
                self.echo.arm()
                await element.pause()
            await self._set_state(ViewerState.PAUSED)
            status = ViewerStatus.PAUSED
        elif self.locally_paused:
            await self._set_state(ViewerState.PAUSED)
            status = ViewerStatus.PAUSED
        else:
            if element.paused:
                self.echo.arm()
                try:
                    await element.play()
                except AutoplayBlockedError:
                    await self._recover_autoplay()
                    return
            await self._set_state(ViewerState.WATCHING)
            status = ViewerStatus.LIVE
        await self._report(status, force=force_report)

    async def _recover_autoplay(self) -> None:
        logger.info("Playback rejected by autoplay policy; falling back to muted playback")
        self._gesture_granted = False
        self._element.muted = True
        self.echo.arm()
        try:
            await self._element.play()
        except AutoplayBlockedError:
            logger.debug("Muted playback rejected as well")
        await self._set_state(ViewerState.READY_GESTURE_PENDING)
        await _call_notifier(self._notify, "autoplay_blocked", {"role": "viewer"})

    async def _report(self, status: ViewerStatus, *, force: bool = False) -> None:
        if not force and status is self._last_reported:
            return
        self._last_reported = status
        await self._context.emit(SignalEvent.VIEWER_STATUS_UPDATE, {"status": status.value})

    async def _on_media_event(self, kind: str) -> None:
        if not self.is_synced or kind == SEEKED_EVENT:
            return
        if self.echo.active:
            logger.debug("Suppressing echo of remote-driven %s", kind)
            return
        if kind == PAUSE_EVENT:
            self.locally_paused = True
            await self._set_state(ViewerState.PAUSED)
            await self._report(ViewerStatus.PAUSED)
        elif kind == PLAY_EVENT:
            self.locally_paused = False
            await self._set_state(ViewerState.WATCHING)
            await self._report(ViewerStatus.LIVE)

    async def _set_state(self, state: ViewerState) -> None:
        if state is self._state:
            return
        logger.debug("Viewer state %s -> %s", self._state.value, state.value)
        self._state = state
        await _call_notifier(self._notify, "state", {"role": "viewer", "state": state.value})
