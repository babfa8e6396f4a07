"""Tunable timing values for link retry and playback reconciliation."""
from __future__ import annotations

import argparse
from dataclasses import dataclass, fields

DEFAULT_DRIFT_TOLERANCE_SECONDS = 0.5
DEFAULT_ECHO_SUPPRESSION_SECONDS = 0.3
# --echo-window bounds; SyncSettings itself only enforces the upper one
ECHO_WINDOW_MIN_SECONDS = 0.1
ECHO_WINDOW_MAX_SECONDS = 0.5
DEFAULT_DIAL_JITTER_SECONDS = 0.5
DEFAULT_DIAL_COOLDOWN_SECONDS = 2.0
DEFAULT_ANNOUNCE_INTERVAL_SECONDS = 2.0
DEFAULT_CAPTURE_FRAME_RATE = 30
RECONNECT_BASE_DELAY_SECONDS = 2.0
RECONNECT_MAX_DELAY_SECONDS = 30.0


@dataclass(slots=True)
class SyncSettings:
    drift_tolerance_seconds: float = DEFAULT_DRIFT_TOLERANCE_SECONDS
    echo_suppression_seconds: float = DEFAULT_ECHO_SUPPRESSION_SECONDS
    dial_jitter_seconds: float = DEFAULT_DIAL_JITTER_SECONDS
    dial_cooldown_seconds: float = DEFAULT_DIAL_COOLDOWN_SECONDS
    announce_interval_seconds: float = DEFAULT_ANNOUNCE_INTERVAL_SECONDS
    capture_frame_rate: int = DEFAULT_CAPTURE_FRAME_RATE
    reconnect_base_delay_seconds: float = RECONNECT_BASE_DELAY_SECONDS
    reconnect_max_delay_seconds: float = RECONNECT_MAX_DELAY_SECONDS

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value < 0:
                raise ValueError(f"{item.name} must not be negative (got {value})")
        if self.announce_interval_seconds <= 0:
            raise ValueError("announce_interval_seconds must be positive")
        if self.capture_frame_rate <= 0:
            raise ValueError("capture_frame_rate must be positive")
        if not 0 < self.echo_suppression_seconds <= ECHO_WINDOW_MAX_SECONDS:
            raise ValueError(
                f"echo_suppression_seconds must be in (0, {ECHO_WINDOW_MAX_SECONDS}] "
                f"(got {self.echo_suppression_seconds})"
            )
        if self.reconnect_max_delay_seconds < self.reconnect_base_delay_seconds:
            raise ValueError("reconnect_max_delay_seconds must be >= reconnect_base_delay_seconds")

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff delay for the given zero-based reconnect attempt."""

        return min(
            self.reconnect_base_delay_seconds * (2 ** max(0, attempt)),
            self.reconnect_max_delay_seconds,
        )

    @staticmethod
    def add_arguments(parser: argparse.ArgumentParser) -> None:
        group = parser.add_argument_group("synchronization")
        group.add_argument(
            "--drift-tolerance",
            type=float,
            default=DEFAULT_DRIFT_TOLERANCE_SECONDS,
            help="Seconds of drift tolerated before a viewer snaps to the host position",
        )
        group.add_argument(
            "--echo-window",
            type=float,
            default=DEFAULT_ECHO_SUPPRESSION_SECONDS,
            help="Seconds a remote-driven playback change suppresses status echoes",
        )
        group.add_argument("--dial-jitter", type=float, default=DEFAULT_DIAL_JITTER_SECONDS, help="Delay before dialing a viewer")
        group.add_argument("--dial-cooldown", type=float, default=DEFAULT_DIAL_COOLDOWN_SECONDS, help="Window during which a viewer is not re-dialed")
        group.add_argument(
            "--announce-interval",
            type=float,
            default=DEFAULT_ANNOUNCE_INTERVAL_SECONDS,
            help="Seconds between viewer presence announcements",
        )
        group.add_argument("--capture-fps", type=int, default=DEFAULT_CAPTURE_FRAME_RATE, help="Frame rate of the captured broadcast stream")
        group.add_argument("--reconnect-base", type=float, default=RECONNECT_BASE_DELAY_SECONDS, help="First reconnect delay in seconds")
        group.add_argument("--reconnect-max", type=float, default=RECONNECT_MAX_DELAY_SECONDS, help="Upper bound for the reconnect delay")

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "SyncSettings":
        if not ECHO_WINDOW_MIN_SECONDS <= args.echo_window <= ECHO_WINDOW_MAX_SECONDS:
            raise ValueError(
                f"--echo-window must be between {ECHO_WINDOW_MIN_SECONDS} and {ECHO_WINDOW_MAX_SECONDS} seconds"
            )
        return cls(
            drift_tolerance_seconds=args.drift_tolerance,
            echo_suppression_seconds=args.echo_window,
            dial_jitter_seconds=args.dial_jitter,
            dial_cooldown_seconds=args.dial_cooldown,
            announce_interval_seconds=args.announce_interval,
            capture_frame_rate=args.capture_fps,
            reconnect_base_delay_seconds=args.reconnect_base,
            reconnect_max_delay_seconds=args.reconnect_max,
        )
