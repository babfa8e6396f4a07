"""Core protocol primitives shared between the relay and participants.

Every coordination message is a named signaling event scoped to a room.
This module centralises the event names, the data model carried by those
events and the length-prefixed JSON framing so both halves of the
application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import struct
import time


class SignalEvent(str, Enum):
    """Named events exchanged over the signaling channel."""

    CONNECTED = "connected"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    KICK_USER = "kick-user"
    KICKED = "kicked"
    HOST_JOINED = "host-joined"
    HOST_STARTED_STREAM = "host-started-stream"
    USER_CONNECTED = "user-connected"
    UPDATE_USER_LIST = "update-user-list"
    VIDEO_SYNC = "video-sync"
    REQUEST_SYNC = "request-sync"
    ASK_SYNC_DATA = "ask-sync-data"
    ASK_HOST_NAME = "ask-host-name"
    RETURN_HOST_NAME = "return-host-name"
    VIEWER_STATUS_UPDATE = "viewer-status-update"
    STOP_BROADCAST = "stop-broadcast"
    BROADCAST_STOPPED = "broadcast-stopped"
    STREAM_FORCED_REFRESH = "stream-forced-refresh"
    SEND_MESSAGE = "send-message"
    RECEIVE_MESSAGE = "receive-message"
    ERROR = "error"


class PlaybackMode(str, Enum):
    PLAY = "PLAY"
    PAUSE = "PAUSE"


class ViewerStatus(str, Enum):
    LIVE = "LIVE"
    PAUSED = "PAUSED"


class ParticipantRole(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


class SessionStateError(RuntimeError):
    """Raised when an operation is not valid in the current session state."""


class HostConflictError(RuntimeError):
    """Raised when a second participant claims the host slot of a room."""


@dataclass(slots=True)
class SyncState:
    """Authoritative playback state published by the host."""

    mode: PlaybackMode
    position_seconds: float
    origin_timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "position_seconds": self.position_seconds,
            "origin_timestamp": self.origin_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        return cls(
            mode=PlaybackMode(data["mode"]),
            position_seconds=float(data["position_seconds"]),
            origin_timestamp=float(data.get("origin_timestamp") or 0.0),
        )


@dataclass(slots=True)
class Participant:
    """Roster entry for a room member."""

    participant_id: str
    display_name: str
    status: ViewerStatus = ViewerStatus.PAUSED
    link_id: Optional[str] = None
    is_host: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "display_name": self.display_name,
            "status": self.status.value,
            "link_id": self.link_id,
            "is_host": self.is_host,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            participant_id=data["participant_id"],
            display_name=data["display_name"],
            status=ViewerStatus(data.get("status", ViewerStatus.PAUSED.value)),
            link_id=data.get("link_id"),
            is_host=bool(data.get("is_host", False)),
        )


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """Payload for chat broadcasts."""

    room_id: str
    author: str
    text: str
    sent_at: float
    origin_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "room_id": self.room_id,
            "author": self.author,
            "text": self.text,
            "sent_at": self.sent_at,
        }
        if self.origin_id:
            data["origin_id"] = self.origin_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            room_id=data["room_id"],
            author=data.get("author") or "Guest",
            text=data["text"],
            sent_at=float(data.get("sent_at") or 0.0),
            origin_id=data.get("origin_id"),
        )


class SignalEnvelope(TypedDict, total=False):
    """Generic representation of a signaling message on the wire."""

    event: str
    data: Dict[str, Any]
    sender: Optional[str]
    target: Optional[str]


@dataclass(frozen=True, slots=True)
class SignalMessage:
    """Decoded signaling message handed to event handlers."""

    event: SignalEvent
    data: Dict[str, Any] = field(default_factory=dict)
    sender: Optional[str] = None
    target: Optional[str] = None

    def to_envelope(self) -> SignalEnvelope:
        envelope: SignalEnvelope = {"event": self.event.value, "data": self.data}
        if self.sender is not None:
            envelope["sender"] = self.sender
        if self.target is not None:
            envelope["target"] = self.target
        return envelope

    @classmethod
    def from_envelope(cls, envelope: SignalEnvelope) -> "SignalMessage":
        data = envelope.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Envelope data must be an object")
        return cls(
            event=SignalEvent(envelope["event"]),
            data=data,
            sender=envelope.get("sender"),
            target=envelope.get("target"),
        )


def encode_signal(message: SignalMessage) -> bytes:
    """Serialize a signaling message using length-prefixed JSON."""

    payload = json.dumps(message.to_envelope(), separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_signal_stream(buffer: bytes) -> tuple[list[SignalEnvelope], bytes]:
    """Decode as many complete envelopes from the buffer as possible.

    Returns a tuple of (envelopes, remaining_buffer).
    """

    offset = 0
    envelopes: list[SignalEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        envelope = json.loads(buffer[start:end].decode("utf-8"))
        envelopes.append(envelope)  # type: ignore[arg-type]
        offset = end

    return envelopes, buffer[offset:]


DEFAULT_SIGNALING_PORT = 55000
DEFAULT_UI_PORT = 8100
