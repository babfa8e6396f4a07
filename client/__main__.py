from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List

from relay.loopback import LoopbackRelay
from shared.config import SyncSettings
from shared.protocol import DEFAULT_UI_PORT, ParticipantRole

from .app import ClientApp
from .context import SessionContext
from .media import MediaElement
from .peer_transport import LoopbackPeerNetwork
from .session import SessionLifecycleController

logger = logging.getLogger(__name__)


def _configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


def _build_controller(
    relay: LoopbackRelay,
    network: LoopbackPeerNetwork,
    room_id: str,
    role: ParticipantRole,
    settings: SyncSettings,
) -> SessionLifecycleController:
    context = SessionContext(
        room_id=room_id,
        role=role,
        signaling=relay.create_client(),
        settings=settings,
    )
    return SessionLifecycleController(
        context,
        element=MediaElement(),
        transport=network.create_transport(),
    )


async def _start_simulated_viewers(
    relay: LoopbackRelay,
    network: LoopbackPeerNetwork,
    room_id: str,
    count: int,
    settings: SyncSettings,
) -> List[SessionLifecycleController]:
    viewers: List[SessionLifecycleController] = []
    for index in range(1, count + 1):
        controller = _build_controller(relay, network, room_id, ParticipantRole.VIEWER, settings)
        controller.login(f"viewer-{index}")
        await controller.initialize_transport()
        # simulated viewers have already clicked play
        await controller.perform_gesture()
        await controller.join_room()
        viewers.append(controller)
    logger.info("Started %d simulated viewer(s) in room %s", count, room_id)
    return viewers


async def run(args: argparse.Namespace, settings: SyncSettings) -> None:
    role = ParticipantRole(args.role)
    relay = LoopbackRelay()
    network = LoopbackPeerNetwork()

    controller = _build_controller(relay, network, args.room, role, settings)
    app = ClientApp(controller, prefill_name=args.name)

    if args.name:
        controller.login(args.name)
        await controller.initialize_transport()
        await controller.join_room()
        if role is ParticipantRole.HOST and args.media:
            await controller.load_media(args.media)
            if args.autostart:
                await controller.play()
                await controller.start_broadcast()

    viewers = await _start_simulated_viewers(relay, network, args.room, args.viewers, settings)
    try:
        await app.run(host=args.ui_host, port=args.ui_port)
    finally:
        for viewer in viewers:
            await viewer.teardown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Watch party session client (local loopback relay)")
    parser.add_argument("room", nargs="?", default="lobby", help="Room to join")
    parser.add_argument(
        "--role",
        choices=[role.value for role in ParticipantRole],
        default=ParticipantRole.HOST.value,
        help="Participant role of the local session",
    )
    parser.add_argument("--name", help="Display name; logs in and joins immediately when given")
    parser.add_argument("--media", help="Media file or URL the host loads after joining")
    parser.add_argument("--autostart", action="store_true", help="Start playback and broadcast once media is loaded")
    parser.add_argument("--viewers", type=int, default=0, help="Number of simulated viewers to add to the room")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=DEFAULT_UI_PORT, help="Port for the local UI web server")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    SyncSettings.add_arguments(parser)
    args = parser.parse_args()

    _configure_logging(args)
    if args.viewers < 0:
        parser.error("--viewers must not be negative")
    try:
        settings = SyncSettings.from_namespace(args)
    except ValueError as exc:
        parser.error(str(exc))
    try:
        asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
