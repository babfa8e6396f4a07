import asyncio

import pytest

from client.context import SessionContext
from client.media import CaptureUnsupportedError, MediaElement, MediaStream
from client.playback_sync import (
    EchoSuppressor,
    HostState,
    HostSyncMachine,
    ViewerState,
    ViewerSyncMachine,
)
from shared.config import SyncSettings
from shared.protocol import (
    ParticipantRole,
    PlaybackMode,
    SessionStateError,
    SignalEvent,
    SignalMessage,
    SyncState,
)
from shared.signaling import SignalingClient


class RecordingSignaling(SignalingClient):
    def __init__(self, client_id: str) -> None:
        super().__init__()
        self._client_id = client_id
        self.sent: list[SignalMessage] = []

    async def connect(self) -> str:
        return self._client_id

    async def close(self) -> None:
        self._client_id = None

    async def _send(self, message: SignalMessage) -> None:
        self.sent.append(message)

    def events(self, event: SignalEvent) -> list[SignalMessage]:
        return [message for message in self.sent if message.event is event]


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


SETTINGS = SyncSettings(echo_suppression_seconds=0.05)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _sync(mode: PlaybackMode, position: float, timestamp: float) -> SyncState:
    return SyncState(mode=mode, position_seconds=position, origin_timestamp=timestamp)


def _viewer(clock: ManualClock):
    signaling = RecordingSignaling("viewer-1")
    context = SessionContext("lobby", ParticipantRole.VIEWER, signaling, settings=SETTINGS, display_name="Vic")
    element = MediaElement(clock=clock)
    return ViewerSyncMachine(context, element), element, signaling


def _statuses(signaling: RecordingSignaling) -> list[str]:
    return [message.data["status"] for message in signaling.events(SignalEvent.VIEWER_STATUS_UPDATE)]


async def _watching_viewer(clock: ManualClock, position: float = 12.3):
    viewer, element, signaling = _viewer(clock)
    await viewer.on_stream(MediaStream())
    await viewer.on_video_sync(_sync(PlaybackMode.PLAY, position, 100.0))
    await viewer.perform_gesture()
    viewer.echo.reset()
    return viewer, element, signaling


@pytest.mark.anyio
async def test_echo_suppressor_clears_itself() -> None:
    echo = EchoSuppressor(0.02)
    assert echo.active is False
    echo.arm()
    assert echo.active is True
    await asyncio.sleep(0.05)
    assert echo.active is False


@pytest.mark.anyio
async def test_viewer_caches_sync_until_gesture_then_snaps() -> None:
    clock = ManualClock()
    viewer, element, signaling = _viewer(clock)

    await viewer.on_stream(MediaStream())
    assert viewer.state is ViewerState.READY_GESTURE_PENDING
    assert element.muted is True
    assert element.paused is False
    assert len(signaling.events(SignalEvent.REQUEST_SYNC)) == 1

    applied = await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 12.3, 100.0))
    assert applied is False
    assert viewer.host_state.position_seconds == 12.3
    assert element.current_time == 0.0

    assert await viewer.perform_gesture() is True
    assert viewer.state is ViewerState.WATCHING
    assert element.muted is False
    assert element.current_time == pytest.approx(12.3)
    assert _statuses(signaling) == ["LIVE"]


@pytest.mark.anyio
async def test_drift_within_tolerance_is_left_alone() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)
    clock.advance(0.3)

    await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 12.4, 101.0))
    assert element.current_time == pytest.approx(12.6)

    await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 20.0, 102.0))
    assert element.current_time == pytest.approx(20.0)
    assert _statuses(signaling) == ["LIVE"]


@pytest.mark.anyio
async def test_host_pause_snaps_and_reports_once() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)

    await viewer.on_video_sync(_sync(PlaybackMode.PAUSE, 40.0, 101.0))
    await viewer.on_video_sync(_sync(PlaybackMode.PAUSE, 40.0, 101.0))

    assert viewer.state is ViewerState.PAUSED
    assert element.paused is True
    assert element.current_time == pytest.approx(40.0)
    assert _statuses(signaling) == ["LIVE", "PAUSED"]
    assert viewer.locally_paused is False


@pytest.mark.anyio
async def test_duplicate_play_sync_changes_nothing() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)
    sync = _sync(PlaybackMode.PLAY, 30.0, 102.0)

    await viewer.on_video_sync(sync)
    snapshot = (viewer.state, element.current_time, element.paused, viewer.host_state)
    await viewer.on_video_sync(sync)

    assert (viewer.state, element.current_time, element.paused, viewer.host_state) == snapshot
    assert viewer.state is ViewerState.WATCHING
    assert element.current_time == pytest.approx(30.0)
    assert _statuses(signaling) == ["LIVE"]


@pytest.mark.anyio
async def test_stale_sync_is_dropped() -> None:
    clock = ManualClock()
    viewer, element, _ = await _watching_viewer(clock)
    await viewer.on_video_sync(_sync(PlaybackMode.PAUSE, 40.0, 105.0))

    assert await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 10.0, 104.0)) is False
    assert viewer.host_state.position_seconds == 40.0
    assert element.paused is True


@pytest.mark.anyio
async def test_local_pause_is_respected_over_host_play() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)

    await element.pause()
    assert viewer.locally_paused is True
    assert viewer.state is ViewerState.PAUSED
    assert _statuses(signaling) == ["LIVE", "PAUSED"]

    await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 30.0, 101.0))
    assert element.paused is True
    assert element.current_time == pytest.approx(30.0)
    assert viewer.state is ViewerState.PAUSED
    assert _statuses(signaling) == ["LIVE", "PAUSED"]

    viewer.echo.reset()
    await element.play()
    assert viewer.locally_paused is False
    assert viewer.state is ViewerState.WATCHING
    assert _statuses(signaling) == ["LIVE", "PAUSED", "LIVE"]


@pytest.mark.anyio
async def test_remote_changes_do_not_echo_status_updates() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)

    for index in range(4):
        mode = PlaybackMode.PAUSE if index % 2 == 0 else PlaybackMode.PLAY
        before = len(_statuses(signaling))
        await viewer.on_video_sync(_sync(mode, 50.0 + index, 101.0 + index))
        assert len(_statuses(signaling)) - before <= 1

    assert viewer.locally_paused is False
    assert _statuses(signaling) == ["LIVE", "PAUSED", "LIVE", "PAUSED", "LIVE"]


@pytest.mark.anyio
async def test_autoplay_rejection_falls_back_to_muted_and_waits_for_gesture() -> None:
    clock = ManualClock()
    viewer, element, signaling = await _watching_viewer(clock)
    await viewer.on_video_sync(_sync(PlaybackMode.PAUSE, 40.0, 101.0))
    viewer.echo.reset()
    element.user_activated = False

    await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 40.0, 102.0))

    assert viewer.state is ViewerState.READY_GESTURE_PENDING
    assert element.muted is True
    assert element.paused is False
    assert _statuses(signaling) == ["LIVE", "PAUSED"]

    await viewer.perform_gesture()
    assert viewer.state is ViewerState.WATCHING
    assert element.muted is False
    assert _statuses(signaling) == ["LIVE", "PAUSED", "LIVE"]


@pytest.mark.anyio
async def test_ended_viewer_clears_source_and_ignores_sync() -> None:
    clock = ManualClock()
    viewer, element, _ = await _watching_viewer(clock)

    await viewer.end()
    assert viewer.state is ViewerState.ENDED
    assert element.has_source is False

    assert await viewer.on_video_sync(_sync(PlaybackMode.PLAY, 70.0, 200.0)) is False
    assert element.has_source is False
    assert viewer.host_state.position_seconds == 70.0

    assert viewer.await_new_link() is True
    assert viewer.state is ViewerState.AWAITING_LINK
    assert viewer.await_new_link() is False


@pytest.mark.anyio
async def test_new_link_after_gesture_goes_straight_to_synced() -> None:
    clock = ManualClock()
    viewer, element, _ = await _watching_viewer(clock)
    await viewer.end()
    viewer.await_new_link()

    await viewer.on_stream(MediaStream())

    assert viewer.state is ViewerState.WATCHING
    assert element.current_time == pytest.approx(12.3)


@pytest.mark.anyio
async def test_kick_is_terminal_and_idempotent() -> None:
    clock = ManualClock()
    viewer, element, _ = await _watching_viewer(clock)

    assert await viewer.kick() is True
    assert await viewer.kick() is False
    assert viewer.state is ViewerState.KICKED
    assert element.has_source is False

    await viewer.on_stream(MediaStream())
    assert viewer.state is ViewerState.KICKED
    assert element.has_source is False
    assert await viewer.perform_gesture() is False


def _host(clock: ManualClock, *, capture_supported: bool = True):
    signaling = RecordingSignaling("host-1")
    context = SessionContext("lobby", ParticipantRole.HOST, signaling, settings=SETTINGS, display_name="Hana")
    element = MediaElement(clock=clock, capture_supported=capture_supported)
    captures: list = []
    host = HostSyncMachine(context, element, on_capture=captures.append)
    return host, element, signaling, captures


def _syncs(signaling: RecordingSignaling) -> list[SignalMessage]:
    return signaling.events(SignalEvent.VIDEO_SYNC)


@pytest.mark.anyio
async def test_host_requires_media_before_broadcast() -> None:
    host, _, signaling, _ = _host(ManualClock())

    with pytest.raises(SessionStateError):
        await host.start_broadcast()
    assert host.state is HostState.IDLE
    assert signaling.sent == []


@pytest.mark.anyio
async def test_capture_failure_does_not_start_broadcast() -> None:
    host, _, signaling, captures = _host(ManualClock(), capture_supported=False)
    await host.load_media("movie.mp4")

    with pytest.raises(CaptureUnsupportedError):
        await host.start_broadcast()
    assert host.state is HostState.MEDIA_LOADED
    assert signaling.sent == []
    assert captures == []


@pytest.mark.anyio
async def test_start_broadcast_publishes_initial_state() -> None:
    clock = ManualClock()
    host, element, signaling, captures = _host(clock)
    await host.load_media("movie.mp4")
    await element.play()
    assert signaling.sent == []

    stream = await host.start_broadcast()

    assert host.state is HostState.BROADCASTING_LIVE
    assert captures == [stream]
    assert stream.frame_rate == 30
    assert [message.event for message in signaling.sent] == [
        SignalEvent.HOST_STARTED_STREAM,
        SignalEvent.VIDEO_SYNC,
        SignalEvent.STREAM_FORCED_REFRESH,
    ]
    assert signaling.sent[0].data["display_name"] == "Hana"
    assert signaling.sent[1].data["mode"] == "PLAY"
    assert signaling.sent[1].data["position_seconds"] == 0.0
    assert signaling.sent[1].target is None


@pytest.mark.anyio
async def test_host_publishes_every_local_transition() -> None:
    clock = ManualClock()
    host, element, signaling, _ = _host(clock)
    await host.load_media("movie.mp4")
    await element.play()
    await host.start_broadcast()

    clock.advance(10.0)
    await element.seek(40.0)
    await element.pause()

    syncs = _syncs(signaling)
    assert [(s.data["mode"], s.data["position_seconds"]) for s in syncs] == [
        ("PLAY", 0.0),
        ("PLAY", 40.0),
        ("PAUSE", 40.0),
    ]
    assert host.state is HostState.BROADCASTING_PAUSED
    assert host.authoritative_state.mode is PlaybackMode.PAUSE


@pytest.mark.anyio
async def test_answer_sync_request_targets_one_viewer() -> None:
    clock = ManualClock()
    host, element, signaling, _ = _host(clock)
    await host.load_media("movie.mp4")
    await element.play()
    await host.start_broadcast()
    clock.advance(12.3)

    assert await host.answer_sync_request("viewer-9") is True

    reply = _syncs(signaling)[-1]
    assert reply.target == "viewer-9"
    assert reply.data["target_id"] == "viewer-9"
    assert reply.data["position_seconds"] == pytest.approx(12.3)


@pytest.mark.anyio
async def test_stop_broadcast_releases_capture_and_rewinds() -> None:
    clock = ManualClock()
    host, element, signaling, captures = _host(clock)
    await host.load_media("movie.mp4")
    await element.play()
    stream = await host.start_broadcast()
    clock.advance(5.0)
    syncs_before = len(_syncs(signaling))

    assert await host.stop_broadcast() is True
    assert await host.stop_broadcast() is False

    assert host.state is HostState.MEDIA_LOADED
    assert stream.active is False
    assert captures == [stream, None]
    assert element.paused is True
    assert element.current_time == 0.0
    assert len(_syncs(signaling)) == syncs_before
    assert signaling.sent[-1].event is SignalEvent.STOP_BROADCAST
    assert await host.answer_sync_request("viewer-9") is False


@pytest.mark.anyio
async def test_media_cannot_change_while_broadcasting() -> None:
    host, element, _, _ = _host(ManualClock())
    await host.load_media("movie.mp4")
    await host.start_broadcast()

    assert host.state is HostState.BROADCASTING_PAUSED
    with pytest.raises(SessionStateError):
        await host.load_media("other.mp4")
