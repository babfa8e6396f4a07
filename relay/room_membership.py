from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, Optional, Set

from shared.protocol import HostConflictError, Participant, ViewerStatus

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000

RosterPublisher = Callable[[str, Dict[str, object]], Awaitable[None]]


@dataclass(slots=True)
class Room:
    room_id: str
    participants: Dict[str, Participant] = field(default_factory=dict)
    host_id: Optional[str] = None
    broadcasting: bool = False
    kicked_ids: Set[str] = field(default_factory=set)
    created_at: float = field(default_factory=lambda: time.time())

    @property
    def host(self) -> Optional[Participant]:
        if self.host_id is None:
            return None
        return self.participants.get(self.host_id)

    def viewers(self) -> list[Participant]:
        return [replace(p) for pid, p in self.participants.items() if pid != self.host_id]


class RoomMembershipManager:
    """Maintains the authoritative roster of every room.

    Each mutation is recorded in a bounded event log and a roster snapshot
    is handed to the publisher so the relay can fan it out to the room.
    """

    def __init__(self, publisher: Optional[RosterPublisher] = None) -> None:
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()
        self._publisher = publisher
        self._event_log: list[dict] = []

    def set_publisher(self, publisher: Optional[RosterPublisher]) -> None:
        self._publisher = publisher

    async def join(
        self,
        room_id: str,
        participant_id: str,
        display_name: str,
        *,
        link_id: Optional[str] = None,
        as_host: bool = False,
    ) -> list[Participant]:
        payload: Optional[Dict[str, object]] = None
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self._rooms[room_id] = room
                self._record_event("room_created", {"room_id": room_id})
            if participant_id in room.kicked_ids:
                raise PermissionError(f"Participant '{participant_id}' was removed from room '{room_id}'")
            if as_host and room.host_id not in (None, participant_id):
                raise HostConflictError(f"Room '{room_id}' already has a host")

            existing = room.participants.get(participant_id)
            changed = False
            if existing is None:
                room.participants[participant_id] = Participant(
                    participant_id=participant_id,
                    display_name=display_name,
                    link_id=link_id,
                    is_host=as_host,
                )
                changed = True
                logger.info("Participant %s (%s) joined room %s", participant_id, display_name, room_id)
                self._record_event(
                    "user_joined",
                    {
                        "room_id": room_id,
                        "participant_id": participant_id,
                        "display_name": display_name,
                        "is_host": as_host,
                    },
                )
            else:
                if existing.display_name != display_name:
                    existing.display_name = display_name
                    changed = True
                if link_id is not None and existing.link_id != link_id:
                    existing.link_id = link_id
                    changed = True
                if as_host and not existing.is_host:
                    existing.is_host = True
                    changed = True
                if changed:
                    self._record_event(
                        "user_refreshed",
                        {"room_id": room_id, "participant_id": participant_id},
                    )
            if as_host:
                room.host_id = participant_id
            roster = room.viewers()
            if changed:
                payload = self._roster_payload_locked(room)
        if payload is not None:
            await self._publish(room_id, payload)
        return roster

    async def leave(self, room_id: str, participant_id: str) -> bool:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return False
            removed = self._remove_locked(room, participant_id, event_type="user_left")
            if not removed:
                return False
            payload = self._roster_payload_locked(room)
        await self._publish(room_id, payload)
        return True

    async def kick(self, room_id: str, participant_id: str) -> bool:
        """Remove and ban a participant; a repeated kick is a no-op."""

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or participant_id not in room.participants:
                return False
            if participant_id == room.host_id:
                logger.warning("Refusing to kick the host of room %s", room_id)
                return False
            room.kicked_ids.add(participant_id)
            self._remove_locked(room, participant_id, event_type="user_kicked")
            payload = self._roster_payload_locked(room)
        await self._publish(room_id, payload)
        return True

    async def update_status(self, room_id: str, participant_id: str, status: ViewerStatus) -> bool:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return False
            participant = room.participants.get(participant_id)
            if participant is None:
                return False
            if participant.status == status:
                return False
            participant.status = status
            self._record_event(
                "status_changed",
                {"room_id": room_id, "participant_id": participant_id, "status": status.value},
            )
            payload = self._roster_payload_locked(room)
        await self._publish(room_id, payload)
        return True

    async def set_broadcasting(self, room_id: str, participant_id: str, active: bool) -> bool:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or room.host_id != participant_id:
                return False
            if room.broadcasting == active:
                return True
            room.broadcasting = active
            self._record_event(
                "broadcast_started" if active else "broadcast_stopped",
                {"room_id": room_id, "participant_id": participant_id},
            )
            payload = self._roster_payload_locked(room)
        await self._publish(room_id, payload)
        return True

    async def drop_participant(self, participant_id: str) -> list[str]:
        """Remove a participant from every room it belongs to."""

        left: list[tuple[str, Dict[str, object]]] = []
        async with self._lock:
            for room in self._rooms.values():
                if self._remove_locked(room, participant_id, event_type="user_disconnected"):
                    left.append((room.room_id, self._roster_payload_locked(room)))
        for room_id, payload in left:
            await self._publish(room_id, payload)
        return [room_id for room_id, _ in left]

    async def roster(self, room_id: str) -> list[Participant]:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return []
            return room.viewers()

    async def get_room(self, room_id: str) -> Optional[Dict[str, object]]:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return None
            return self._roster_payload_locked(room)

    async def host_of(self, room_id: str) -> Optional[Participant]:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or room.host is None:
                return None
            return replace(room.host)

    async def is_broadcasting(self, room_id: str) -> bool:
        async with self._lock:
            room = self._rooms.get(room_id)
            return bool(room and room.broadcasting)

    async def is_member(self, room_id: str, participant_id: str) -> bool:
        async with self._lock:
            room = self._rooms.get(room_id)
            return bool(room and participant_id in room.participants)

    async def members(self, room_id: str) -> list[str]:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return []
            return list(room.participants.keys())

    async def rooms_for(self, participant_id: str) -> list[str]:
        async with self._lock:
            return [room.room_id for room in self._rooms.values() if participant_id in room.participants]

    async def list_rooms(self) -> list[str]:
        async with self._lock:
            return list(self._rooms.keys())

    async def snapshot(self) -> dict:
        async with self._lock:
            rooms = []
            for room in self._rooms.values():
                host = room.host
                rooms.append(
                    {
                        "room_id": room.room_id,
                        "host": host.to_dict() if host else None,
                        "broadcasting": room.broadcasting,
                        "participants": [p.to_dict() for p in room.viewers()],
                        "participant_count": len(room.participants),
                        "kicked_ids": sorted(room.kicked_ids),
                        "created_at": room.created_at,
                    }
                )
            return {
                "rooms": rooms,
                "room_count": len(rooms),
                "events": list(self._event_log[-300:]),
            }

    async def get_recent_events(self, limit: int = 300) -> list[dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def _publish(self, room_id: str, payload: Dict[str, object]) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher(room_id, payload)
        except Exception:
            logger.exception("Failed to publish roster for room %s", room_id)

    def _remove_locked(self, room: Room, participant_id: str, *, event_type: str) -> bool:
        participant = room.participants.pop(participant_id, None)
        if participant is None:
            return False
        if room.host_id == participant_id:
            room.host_id = None
            room.broadcasting = False
        logger.info("Participant %s removed from room %s (%s)", participant_id, room.room_id, event_type)
        self._record_event(
            event_type,
            {"room_id": room.room_id, "participant_id": participant_id},
        )
        return True

    def _roster_payload_locked(self, room: Room) -> Dict[str, object]:
        host = room.host
        return {
            "room_id": room.room_id,
            "host": host.to_dict() if host else None,
            "broadcasting": room.broadcasting,
            "participants": [p.to_dict() for p in room.viewers()],
        }

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)
