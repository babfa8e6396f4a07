from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.protocol import Participant, ViewerStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RosterView:
    """Read-only projection of a room roster as published by the relay."""

    room_id: str
    self_id: Optional[str] = None
    host: Optional[Participant] = None
    broadcasting: bool = False
    viewers: List[Participant] = field(default_factory=list)

    def apply(self, payload: Dict[str, Any]) -> bool:
        """Replace the projection with a roster snapshot; other rooms are ignored."""

        if payload.get("room_id") != self.room_id:
            return False
        host_data = payload.get("host")
        self.host = Participant.from_dict(host_data) if host_data else None
        self.broadcasting = bool(payload.get("broadcasting", False))
        viewers = []
        for entry in payload.get("participants") or []:
            try:
                viewers.append(Participant.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed roster entry %r", entry)
        self.viewers = viewers
        return True

    def get(self, participant_id: str) -> Optional[Participant]:
        if self.host is not None and self.host.participant_id == participant_id:
            return self.host
        for viewer in self.viewers:
            if viewer.participant_id == participant_id:
                return viewer
        return None

    def status_of(self, participant_id: str) -> Optional[ViewerStatus]:
        participant = self.get(participant_id)
        return participant.status if participant else None

    def others(self) -> List[Participant]:
        return [viewer for viewer in self.viewers if viewer.participant_id != self.self_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "host": self.host.to_dict() if self.host else None,
            "broadcasting": self.broadcasting,
            "participants": [viewer.to_dict() for viewer in self.viewers],
        }
