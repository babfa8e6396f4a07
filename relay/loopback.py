"""In-process relay used for local sessions and tests.

The relay routes envelopes between :class:`LoopbackSignalingClient` objects
living in the same event loop. Each client owns an inbox drained by its own
task, so delivery is asynchronous and ordered per client, as it would be
over a real channel.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from shared.protocol import (
    ChatMessage,
    HostConflictError,
    ParticipantRole,
    SignalEvent,
    SignalMessage,
    ViewerStatus,
)
from shared.signaling import SignalingClient

from .room_membership import RoomMembershipManager

logger = logging.getLogger(__name__)

RouteHandler = Callable[[str, SignalMessage], Awaitable[None]]


class LoopbackSignalingClient(SignalingClient):
    """Signaling adapter bound to a :class:`LoopbackRelay`."""

    def __init__(self, relay: "LoopbackRelay") -> None:
        super().__init__()
        self._relay = relay
        self._inbox: asyncio.Queue[SignalMessage] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def idle(self) -> bool:
        return self._pending == 0

    async def connect(self) -> str:
        if self._client_id is not None:
            return self._client_id
        self._client_id = self._relay._register(self)
        self._pump_task = asyncio.create_task(self._pump())
        logger.debug("Loopback client %s connected", self._client_id)
        return self._client_id

    async def close(self) -> None:
        client_id = self._client_id
        if client_id is None:
            return
        self._client_id = None
        self._stop_pump()
        await self._relay._unregister(client_id)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _send(self, message: SignalMessage) -> None:
        if self._client_id is None:
            raise ConnectionError("Signaling client is not connected")
        await self._relay.route(message)

    def _enqueue(self, message: SignalMessage) -> None:
        self._pending += 1
        self._idle.clear()
        self._inbox.put_nowait(message)

    async def _pump(self) -> None:
        try:
            while True:
                message = await self._inbox.get()
                try:
                    await self.deliver(message)
                finally:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.set()
        except asyncio.CancelledError:
            return

    def _stop_pump(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        while not self._inbox.empty():
            self._inbox.get_nowait()
        self._pending = 0
        self._idle.set()

    async def _drop(self, reason: str) -> None:
        client_id = self._client_id
        if client_id is None:
            return
        self._client_id = None
        self._stop_pump()
        await self._relay._unregister(client_id)
        await self._notify_disconnect(reason)


class LoopbackRelay:
    """Routes signaling events between loopback clients of one process."""

    def __init__(self, membership: Optional[RoomMembershipManager] = None) -> None:
        self._membership = membership or RoomMembershipManager()
        self._membership.set_publisher(self._publish_roster)
        self._clients: Dict[str, LoopbackSignalingClient] = {}
        self._ids = itertools.count(1)
        self._routes: Dict[SignalEvent, RouteHandler] = {
            SignalEvent.JOIN_ROOM: self._on_join_room,
            SignalEvent.LEAVE_ROOM: self._on_leave_room,
            SignalEvent.HOST_JOINED: self._on_host_joined,
            SignalEvent.HOST_STARTED_STREAM: self._on_host_started_stream,
            SignalEvent.KICK_USER: self._on_kick_user,
            SignalEvent.VIDEO_SYNC: self._on_video_sync,
            SignalEvent.REQUEST_SYNC: self._on_request_sync,
            SignalEvent.ASK_HOST_NAME: self._on_ask_host_name,
            SignalEvent.RETURN_HOST_NAME: self._on_return_host_name,
            SignalEvent.VIEWER_STATUS_UPDATE: self._on_viewer_status_update,
            SignalEvent.STOP_BROADCAST: self._on_stop_broadcast,
            SignalEvent.STREAM_FORCED_REFRESH: self._on_forced_refresh,
            SignalEvent.SEND_MESSAGE: self._on_send_message,
        }

    @property
    def membership(self) -> RoomMembershipManager:
        return self._membership

    def create_client(self) -> LoopbackSignalingClient:
        return LoopbackSignalingClient(self)

    def connected_ids(self) -> Set[str]:
        return set(self._clients)

    async def settle(self, max_rounds: int = 100) -> None:
        """Wait until every client inbox is drained and stays drained."""

        for _ in range(max_rounds):
            busy = [client for client in self._clients.values() if not client.idle]
            if not busy:
                await asyncio.sleep(0)
                if all(client.idle for client in self._clients.values()):
                    return
                continue
            await asyncio.gather(*(client.wait_idle() for client in busy))
        logger.warning("Relay did not settle after %d rounds", max_rounds)

    async def disconnect(self, client_id: str, reason: str = "relay_closed") -> None:
        """Drop a client connection as if the transport failed."""

        client = self._clients.get(client_id)
        if client is not None:
            await client._drop(reason)

    async def route(self, message: SignalMessage) -> None:
        sender = message.sender
        if sender is None or sender not in self._clients:
            logger.debug("Dropping %s from unknown sender %s", message.event.value, sender)
            return
        handler = self._routes.get(message.event)
        if handler is None:
            logger.debug("Relay ignoring %s from %s", message.event.value, sender)
            return
        try:
            await handler(sender, message)
        except PermissionError as exc:
            logger.warning("Rejected %s from %s: %s", message.event.value, sender, exc)
            await self._deliver(sender, SignalMessage(SignalEvent.KICKED, {"reason": str(exc)}))
        except HostConflictError as exc:
            await self._send_error(sender, str(exc), "host_conflict")
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("Malformed %s from %s: %s", message.event.value, sender, exc)
            await self._send_error(sender, f"Malformed {message.event.value} event", "bad_request")

    def _register(self, client: LoopbackSignalingClient) -> str:
        client_id = f"conn-{next(self._ids)}"
        self._clients[client_id] = client
        return client_id

    async def _unregister(self, client_id: str) -> None:
        self._clients.pop(client_id, None)
        await self._membership.drop_participant(client_id)

    async def _deliver(self, client_id: str, message: SignalMessage) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        client._enqueue(message)
        return True

    async def _broadcast(self, room_id: str, message: SignalMessage, *, exclude: Optional[Set[str]] = None) -> None:
        exclude = exclude or set()
        for member in await self._membership.members(room_id):
            if member in exclude:
                continue
            await self._deliver(member, message)

    async def _send_error(self, client_id: str, reason: str, code: str) -> None:
        await self._deliver(client_id, SignalMessage(SignalEvent.ERROR, {"reason": reason, "code": code}))

    async def _publish_roster(self, room_id: str, payload: Dict[str, object]) -> None:
        await self._broadcast(room_id, SignalMessage(SignalEvent.UPDATE_USER_LIST, payload))

    async def _host_id(self, room_id: str) -> Optional[str]:
        host = await self._membership.host_of(room_id)
        return host.participant_id if host else None

    async def _require_host(self, room_id: str, sender: str) -> bool:
        if await self._host_id(room_id) == sender:
            return True
        logger.warning("Participant %s is not the host of room %s", sender, room_id)
        await self._send_error(sender, "Only the host may do that", "forbidden")
        return False

    # ------------------------------------------------------------------ routes

    async def _on_join_room(self, sender: str, message: SignalMessage) -> None:
        data = message.data
        room_id = str(data["room_id"])
        role = ParticipantRole(data.get("role", ParticipantRole.VIEWER.value))
        await self._membership.join(
            room_id,
            sender,
            str(data.get("display_name") or "Guest"),
            link_id=data.get("transport_id"),
            as_host=role is ParticipantRole.HOST,
        )
        if role is ParticipantRole.HOST:
            return
        host_id = await self._host_id(room_id)
        if host_id is None:
            return
        await self._deliver(
            host_id,
            SignalMessage(
                SignalEvent.USER_CONNECTED,
                {
                    "room_id": room_id,
                    "participant_id": sender,
                    "transport_id": data.get("transport_id"),
                },
                sender=sender,
            ),
        )

    async def _on_leave_room(self, sender: str, message: SignalMessage) -> None:
        room_id = message.data.get("room_id")
        if room_id is None:
            await self._membership.drop_participant(sender)
            return
        await self._membership.leave(str(room_id), sender)

    async def _on_host_joined(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        if not await self._require_host(room_id, sender):
            return
        await self._broadcast(room_id, message, exclude={sender})

    async def _on_host_started_stream(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        if not await self._require_host(room_id, sender):
            return
        await self._membership.set_broadcasting(room_id, sender, True)
        await self._broadcast(room_id, message, exclude={sender})

    async def _on_stop_broadcast(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        if not await self._require_host(room_id, sender):
            return
        await self._membership.set_broadcasting(room_id, sender, False)
        await self._broadcast(
            room_id,
            SignalMessage(SignalEvent.BROADCAST_STOPPED, {"room_id": room_id}, sender=sender),
            exclude={sender},
        )

    async def _on_kick_user(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        target_id = str(message.data["target_id"])
        if not await self._require_host(room_id, sender):
            return
        if await self._membership.kick(room_id, target_id):
            await self._deliver(target_id, SignalMessage(SignalEvent.KICKED, {"room_id": room_id}, sender=sender))

    async def _on_video_sync(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        if await self._host_id(room_id) != sender:
            logger.warning("Ignoring video-sync from non-host %s in room %s", sender, room_id)
            return
        target = message.target or message.data.get("target_id")
        if target:
            if await self._membership.is_member(room_id, target):
                await self._deliver(target, message)
            return
        await self._broadcast(room_id, message, exclude={sender})

    async def _on_request_sync(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        host_id = await self._host_id(room_id)
        if host_id is None:
            return
        await self._deliver(
            host_id,
            SignalMessage(SignalEvent.ASK_SYNC_DATA, {"room_id": room_id, "requester_id": sender}, sender=sender),
        )

    async def _on_ask_host_name(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        host_id = await self._host_id(room_id)
        if host_id is None:
            return
        await self._deliver(
            host_id,
            SignalMessage(SignalEvent.ASK_HOST_NAME, {"room_id": room_id, "requester_id": sender}, sender=sender),
        )

    async def _on_return_host_name(self, sender: str, message: SignalMessage) -> None:
        target = message.target or message.data.get("requester_id")
        if not target:
            raise ValueError("return-host-name without a requester")
        await self._deliver(str(target), message)

    async def _on_viewer_status_update(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        status = ViewerStatus(message.data["status"])
        await self._membership.update_status(room_id, sender, status)
        host_id = await self._host_id(room_id)
        if host_id is not None and host_id != sender:
            await self._deliver(host_id, message)

    async def _on_forced_refresh(self, sender: str, message: SignalMessage) -> None:
        room_id = str(message.data["room_id"])
        if not await self._require_host(room_id, sender):
            return
        if message.target:
            await self._deliver(message.target, message)
            return
        await self._broadcast(room_id, message, exclude={sender})

    async def _on_send_message(self, sender: str, message: SignalMessage) -> None:
        chat = ChatMessage.from_dict(message.data)
        if not await self._membership.is_member(chat.room_id, sender):
            logger.debug("Dropping chat from %s outside room %s", sender, chat.room_id)
            return
        await self._broadcast(
            chat.room_id,
            SignalMessage(SignalEvent.RECEIVE_MESSAGE, chat.to_dict(), sender=sender),
            exclude={sender},
        )
