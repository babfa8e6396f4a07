"""Local media pipeline used by the synchronization state machines.

:class:`MediaElement` models the part of a browser media element the
protocol relies on: a source (a local file or a remote stream), a playback
clock, play/pause/seek, mute, the autoplay policy and stream capture.
Lifecycle events (``play``, ``pause``, ``seeked``) are delivered to
listeners in the order the element changes state.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

MediaListener = Callable[[str], Awaitable[None] | None]

PLAY_EVENT = "play"
PAUSE_EVENT = "pause"
SEEKED_EVENT = "seeked"


class AutoplayBlockedError(RuntimeError):
    """play() was rejected because unmuted playback needs a user gesture."""


class CaptureUnsupportedError(RuntimeError):
    """The local pipeline cannot produce a capturable output stream."""


@dataclass(slots=True)
class MediaStream:
    """Captured audio+video stream carried over a peer link."""

    stream_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    frame_rate: int = 30
    active: bool = True

    def stop(self) -> None:
        self.active = False


class MediaElement:
    """Headless media element with a monotonic playback clock."""

    def __init__(
        self,
        *,
        requires_gesture: bool = True,
        capture_supported: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._requires_gesture = requires_gesture
        self._capture_supported = capture_supported
        self._clock = clock
        self._source: Optional[Union[str, MediaStream]] = None
        self._paused = True
        self._position = 0.0
        self._started_at: Optional[float] = None
        self._listeners: List[MediaListener] = []
        self.muted = False
        self.user_activated = False

    @property
    def source(self) -> Optional[Union[str, MediaStream]]:
        return self._source

    @property
    def has_source(self) -> bool:
        return self._source is not None

    @property
    def has_stream(self) -> bool:
        return isinstance(self._source, MediaStream)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def current_time(self) -> float:
        if self._paused or self._started_at is None:
            return self._position
        return self._position + max(0.0, self._clock() - self._started_at)

    def add_listener(self, listener: MediaListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def grant_user_activation(self) -> None:
        self.user_activated = True

    def load(self, source: str) -> None:
        """Load a local media file or URL; playback starts paused at zero."""

        if not source:
            raise ValueError("Media source must not be empty")
        self._source = source
        self._reset_clock()

    def attach_stream(self, stream: MediaStream) -> None:
        self._source = stream
        self._reset_clock()

    def clear_source(self) -> None:
        self._source = None
        self._reset_clock()

    async def seek(self, seconds: float) -> None:
        if not self.has_source:
            return
        self._position = max(0.0, float(seconds))
        if not self._paused:
            self._started_at = self._clock()
        await self._emit(SEEKED_EVENT)

    async def play(self) -> None:
        if not self.has_source:
            raise RuntimeError("No media source loaded")
        if self._requires_gesture and not self.muted and not self.user_activated:
            raise AutoplayBlockedError("Unmuted playback requires a user gesture")
        if not self._paused:
            return
        self._paused = False
        self._started_at = self._clock()
        await self._emit(PLAY_EVENT)

    async def pause(self) -> None:
        if self._paused:
            return
        self._position = self.current_time
        self._paused = True
        self._started_at = None
        await self._emit(PAUSE_EVENT)

    def capture_stream(self, frame_rate: int = 30) -> MediaStream:
        if not self._capture_supported:
            raise CaptureUnsupportedError("Stream capture is not supported by this media pipeline")
        if self._source is None or self.has_stream:
            raise CaptureUnsupportedError("No local media loaded to capture")
        return MediaStream(frame_rate=frame_rate)

    def _reset_clock(self) -> None:
        self._paused = True
        self._position = 0.0
        self._started_at = None

    async def _emit(self, kind: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(kind)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Media listener failed for %s", kind)
