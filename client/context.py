from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from shared.config import SyncSettings
from shared.protocol import ParticipantRole, SignalEvent
from shared.signaling import SignalingClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionContext:
    """Per-session state handed to every participant-side component.

    Lives from login until teardown; nothing here is module-global.
    """

    room_id: str
    role: ParticipantRole
    signaling: SignalingClient
    settings: SyncSettings = field(default_factory=SyncSettings)
    display_name: Optional[str] = None
    transport_id: Optional[str] = None

    @property
    def participant_id(self) -> Optional[str]:
        return self.signaling.client_id

    @property
    def is_host(self) -> bool:
        return self.role is ParticipantRole.HOST

    async def emit(
        self,
        event: SignalEvent,
        data: Optional[Mapping[str, Any]] = None,
        *,
        target: Optional[str] = None,
    ) -> bool:
        """Publish a room-scoped event; transport failures are logged, not raised."""

        payload = {"room_id": self.room_id}
        if data:
            payload.update(data)
        try:
            await self.signaling.emit(event, payload, target=target)
        except (ConnectionError, RuntimeError) as exc:
            logger.warning("Could not publish %s: %s", event.value, exc)
            return False
        return True
