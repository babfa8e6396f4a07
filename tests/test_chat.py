import pytest

from client.chat import CHAT_HISTORY_LIMIT, ChatRelay
from client.context import SessionContext
from shared.protocol import ChatMessage, ParticipantRole, SignalEvent, SignalMessage
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


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _relay(notified: list | None = None) -> tuple[ChatRelay, RecordingSignaling]:
    signaling = RecordingSignaling("conn-1")
    context = SessionContext("lobby", ParticipantRole.VIEWER, signaling, display_name="Vic")
    notify = None
    if notified is not None:
        async def notify(kind: str, payload: dict) -> None:
            notified.append((kind, payload))
    return ChatRelay(context, notify=notify, clock=lambda: 42.0), signaling


@pytest.mark.anyio
async def test_send_trims_echoes_locally_and_emits_once() -> None:
    notified: list = []
    chat, signaling = _relay(notified)

    message = await chat.send("  hello  ")

    assert message is not None
    assert message.text == "hello"
    assert [(entry.message.text, entry.is_local) for entry in chat.history] == [("hello", True)]
    assert len(signaling.sent) == 1
    sent = signaling.sent[0]
    assert sent.event is SignalEvent.SEND_MESSAGE
    assert sent.data == {
        "room_id": "lobby",
        "author": "Vic",
        "text": "hello",
        "sent_at": 42.0,
        "origin_id": "conn-1",
    }
    assert notified == [("chat", {**sent.data, "is_local": True})]


@pytest.mark.anyio
async def test_blank_text_is_not_sent() -> None:
    chat, signaling = _relay()

    assert await chat.send("   ") is None
    assert await chat.send("") is None
    assert chat.history == []
    assert signaling.sent == []


@pytest.mark.anyio
async def test_receive_skips_other_rooms_and_own_messages() -> None:
    chat, _ = _relay()

    assert await chat.on_receive(ChatMessage("other", "Oz", "hi", 1.0, origin_id="conn-2")) is False
    assert await chat.on_receive(ChatMessage("lobby", "Vic", "mine", 1.0, origin_id="conn-1")) is False
    assert await chat.on_receive(ChatMessage("lobby", "Hana", "welcome", 2.0, origin_id="conn-0")) is True

    assert [(entry.message.author, entry.is_local) for entry in chat.history] == [("Hana", False)]


@pytest.mark.anyio
async def test_malformed_payload_is_dropped() -> None:
    chat, _ = _relay()

    await chat.handle_event(SignalMessage(SignalEvent.RECEIVE_MESSAGE, {"room_id": "lobby"}))
    await chat.handle_event(
        SignalMessage(SignalEvent.RECEIVE_MESSAGE, {"room_id": "lobby", "text": "ok", "author": ""})
    )

    assert [(entry.message.author, entry.message.text) for entry in chat.history] == [("Guest", "ok")]


@pytest.mark.anyio
async def test_history_is_capped() -> None:
    chat, _ = _relay()

    for index in range(CHAT_HISTORY_LIMIT + 5):
        await chat.on_receive(ChatMessage("lobby", "Hana", f"line {index}", float(index)))

    history = chat.history
    assert len(history) == CHAT_HISTORY_LIMIT
    assert history[0].message.text == "line 5"
    assert history[-1].message.text == f"line {CHAT_HISTORY_LIMIT + 4}"
