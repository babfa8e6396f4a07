import asyncio

import pytest

from client.context import SessionContext
from client.media import MediaStream
from client.peer_links import PeerLinkManager
from client.peer_transport import IncomingCall, LoopbackPeerNetwork, MediaLink, PeerLinkError, PeerTransport
from shared.config import SyncSettings
from shared.protocol import ParticipantRole, SignalEvent, SignalMessage
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


SETTINGS = SyncSettings(
    dial_jitter_seconds=0.02,
    dial_cooldown_seconds=0.1,
    announce_interval_seconds=0.05,
    echo_suppression_seconds=0.01,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _pair(settings: SyncSettings = SETTINGS):
    network = LoopbackPeerNetwork()
    host_transport = network.create_transport()
    viewer_transport = network.create_transport()
    await host_transport.open()
    viewer_peer_id = await viewer_transport.open()

    host_ctx = SessionContext("lobby", ParticipantRole.HOST, RecordingSignaling("host"), settings=settings)
    viewer_ctx = SessionContext(
        "lobby",
        ParticipantRole.VIEWER,
        RecordingSignaling("viewer"),
        settings=settings,
        display_name="Vic",
        transport_id=viewer_peer_id,
    )
    streams: list[MediaStream] = []
    host_links = PeerLinkManager(host_ctx, host_transport)
    viewer_links = PeerLinkManager(viewer_ctx, viewer_transport, on_stream=streams.append)
    viewer_transport.on_call(viewer_links.accept_call)
    return network, host_links, viewer_links, viewer_peer_id, streams, viewer_ctx


@pytest.mark.anyio
async def test_dial_requires_active_stream() -> None:
    _, host_links, _, peer_id, _, _ = await _pair()

    assert host_links.dial("viewer", peer_id) is False
    stream = MediaStream()
    stream.stop()
    host_links.set_outbound_stream(stream)
    assert host_links.dial("viewer", peer_id) is False
    host_links.set_outbound_stream(MediaStream())
    assert host_links.dial("viewer", None) is False


@pytest.mark.anyio
async def test_duplicate_dials_within_cooldown_issue_one_attempt() -> None:
    network, host_links, viewer_links, peer_id, streams, _ = await _pair()
    host_links.set_outbound_stream(MediaStream())

    assert host_links.dial("viewer", peer_id) is True
    assert host_links.dial("viewer", peer_id) is False
    await asyncio.sleep(0.05)
    assert host_links.dial("viewer", peer_id) is False

    assert network.calls_to(peer_id) == 1
    assert peer_id in host_links.links
    assert viewer_links.accepted is True
    assert len(streams) == 1
    assert host_links.is_dial_in_flight(peer_id) is True

    await asyncio.sleep(0.12)
    assert host_links.is_dial_in_flight(peer_id) is False


@pytest.mark.anyio
async def test_failed_dial_is_swallowed_and_retried_after_cooldown() -> None:
    network, host_links, viewer_links, peer_id, streams, _ = await _pair()
    host_links.set_outbound_stream(MediaStream())
    network.unreachable.add(peer_id)

    assert host_links.dial("viewer", peer_id) is True
    await asyncio.sleep(0.05)
    assert host_links.links == {}
    assert host_links.dial("viewer", peer_id) is False

    network.unreachable.clear()
    await asyncio.sleep(0.15)
    assert host_links.dial("viewer", peer_id) is True
    await asyncio.sleep(0.05)
    assert network.calls_to(peer_id) == 2
    assert peer_id in host_links.links
    assert len(streams) == 1


@pytest.mark.anyio
async def test_viewer_ignores_call_while_link_accepted() -> None:
    network, host_links, viewer_links, peer_id, streams, _ = await _pair(
        SyncSettings(dial_jitter_seconds=0, dial_cooldown_seconds=0.01)
    )
    host_links.set_outbound_stream(MediaStream())

    host_links.dial("viewer", peer_id)
    await asyncio.sleep(0.05)
    first_link = host_links.links[peer_id]
    host_links.dial("viewer", peer_id)
    await asyncio.sleep(0.05)

    assert network.calls_to(peer_id) == 2
    assert len(streams) == 1
    assert host_links.links[peer_id] is first_link
    assert viewer_links.inbound_link is first_link


@pytest.mark.anyio
async def test_announcing_repeats_until_call_accepted() -> None:
    network, host_links, viewer_links, peer_id, streams, viewer_ctx = await _pair()
    signaling = viewer_ctx.signaling

    assert viewer_links.start_announcing() is True
    assert viewer_links.start_announcing() is False
    await asyncio.sleep(0.12)
    joins = signaling.events(SignalEvent.JOIN_ROOM)
    assert len(joins) >= 2
    assert joins[0].data == {
        "room_id": "lobby",
        "transport_id": peer_id,
        "display_name": "Vic",
        "role": "viewer",
    }

    host_links.set_outbound_stream(MediaStream())
    host_links.dial("viewer", peer_id)
    await asyncio.sleep(0.05)
    assert viewer_links.accepted is True
    assert viewer_links.announcing is False
    count = len(signaling.events(SignalEvent.JOIN_ROOM))
    await asyncio.sleep(0.1)
    assert len(signaling.events(SignalEvent.JOIN_ROOM)) == count


@pytest.mark.anyio
async def test_announce_timer_is_cancelled_once() -> None:
    _, _, viewer_links, _, _, _ = await _pair()

    viewer_links.start_announcing()
    assert viewer_links.cancel_announcing() is True
    assert viewer_links.cancel_announcing() is False
    await viewer_links.teardown()
    assert viewer_links.cancel_announcing() is False


@pytest.mark.anyio
async def test_forced_refresh_resets_link_and_resumes_announcing() -> None:
    _, _, viewer_links, peer_id, streams, viewer_ctx = await _pair()
    link = MediaLink("link-x", "peer-host", peer_id, MediaStream())

    assert await viewer_links.accept_call(IncomingCall(link)) is True
    assert await viewer_links.accept_call(IncomingCall(MediaLink("link-y", "peer-host", peer_id, MediaStream()))) is False
    assert viewer_links.announcing is False

    assert viewer_links.handle_forced_refresh() is True
    assert viewer_links.accepted is False
    assert viewer_links.announcing is True
    assert link.open is False
    await asyncio.sleep(0.01)
    assert viewer_ctx.signaling.events(SignalEvent.JOIN_ROOM)
    await viewer_links.teardown()


@pytest.mark.anyio
async def test_drop_viewer_and_close_links() -> None:
    network, host_links, _, peer_id, _, _ = await _pair(SyncSettings(dial_jitter_seconds=0, dial_cooldown_seconds=0.01))
    host_links.set_outbound_stream(MediaStream())
    host_links.dial("viewer", peer_id)
    await asyncio.sleep(0.03)
    link = host_links.links[peer_id]

    host_links.drop_viewer("viewer")
    assert link.open is False
    assert host_links.links == {}

    host_links.dial("viewer", peer_id)
    host_links.close_links()
    await asyncio.sleep(0.03)
    assert host_links.links == {}
    assert host_links.is_dial_in_flight(peer_id) is False


@pytest.mark.anyio
async def test_teardown_destroys_transport_and_is_idempotent() -> None:
    network = LoopbackPeerNetwork()
    transport = network.create_transport()
    peer_id = await transport.open()
    ctx = SessionContext("lobby", ParticipantRole.VIEWER, RecordingSignaling("viewer"), settings=SETTINGS)
    links = PeerLinkManager(ctx, transport)
    links.start_announcing()

    await links.teardown()
    await links.teardown()

    assert transport.destroyed is True
    assert links.announcing is False
    assert links.start_announcing() is False
    caller = network.create_transport()
    await caller.open()
    with pytest.raises(PeerLinkError):
        await caller.call(peer_id, MediaStream())


@pytest.mark.anyio
async def test_prune_drops_departed_viewers_but_keeps_reused_peers() -> None:
    settings = SyncSettings(dial_jitter_seconds=0, dial_cooldown_seconds=0.01)
    network, host_links, viewer_links, peer_id, _, _ = await _pair(settings)
    host_links.set_outbound_stream(MediaStream())
    host_links.dial("viewer", peer_id)
    await asyncio.sleep(0.03)
    first = host_links.links[peer_id]

    viewer_links.reset_link()
    await asyncio.sleep(0.02)
    host_links.dial("viewer-again", peer_id)
    await asyncio.sleep(0.03)
    second = host_links.links[peer_id]
    assert second is not first

    assert host_links.prune_departed(["viewer-again"]) == ["viewer"]
    assert second.open is True
    assert host_links.prune_departed([]) == ["viewer-again"]
    assert second.open is False
    assert host_links.links == {}
    assert host_links.prune_departed([]) == []


@pytest.mark.anyio
async def test_loopback_transport_forgets_closed_links() -> None:
    network = LoopbackPeerNetwork()
    caller = network.create_transport()
    callee = network.create_transport()
    await caller.open()
    peer_id = await callee.open()
    callee.on_call(IncomingCall.answer)

    for _ in range(3):
        link = await caller.call(peer_id, MediaStream())
        link.close()
    await caller.call(peer_id, MediaStream())

    assert caller.open_link_count == 1
    assert caller.known_link_count == 1
    assert callee.known_link_count == 1


def test_incomplete_peer_transport_cannot_be_created() -> None:
    class CallOnly(PeerTransport):
        async def call(self, peer_id: str, stream: MediaStream) -> MediaLink:
            raise PeerLinkError(peer_id)

    with pytest.raises(TypeError):
        CallOnly()
