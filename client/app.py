from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.protocol import DEFAULT_UI_PORT, SessionStateError

from .media import AutoplayBlockedError, CaptureUnsupportedError
from .session import SessionLifecycleController

logger = logging.getLogger(__name__)


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class ClientApp:
    """Local UI bridge: forwards session state to the browser and UI actions to the session."""

    def __init__(self, controller: SessionLifecycleController, *, prefill_name: Optional[str] = None) -> None:
        self._controller = controller
        self._prefill_name = prefill_name
        self._ws_hub = WebSocketHub()
        self._uvicorn_server = None
        self._app = FastAPI()
        controller.add_listener(self._on_session_event)
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def hub(self) -> WebSocketHub:
        return self._ws_hub

    def _configure_routes(self) -> None:
        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            context = self._controller.context
            settings = context.settings
            return {
                "room_id": context.room_id,
                "role": context.role.value,
                "prefill_name": self._prefill_name,
                "drift_tolerance_seconds": settings.drift_tolerance_seconds,
                "echo_suppression_seconds": settings.echo_suppression_seconds,
            }

        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._controller.snapshot()

        @self._app.websocket("/ws/session")
        async def ws_session(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json(
                    {
                        "type": "session_status",
                        "payload": {"state": self._session_state(), "room_id": self._controller.context.room_id},
                    }
                )
                await websocket.send_json({"type": "state_snapshot", "payload": self._controller.snapshot()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _session_state(self) -> str:
        controller = self._controller
        if controller.kicked:
            return "kicked"
        if controller.torn_down:
            return "closed"
        if controller.reconnecting:
            return "reconnecting"
        if controller.joined:
            return "joined"
        return "idle"

    async def _on_session_event(self, kind: str, payload: Dict[str, object]) -> None:
        await self._ws_hub.broadcast({"type": kind, "payload": payload})

    async def _broadcast_error(self, message: str, code: str) -> None:
        await self._ws_hub.broadcast({"type": "error", "payload": {"reason": message, "code": code}})

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        controller = self._controller
        try:
            if kind == "login":
                name = str(payload.get("display_name") or self._prefill_name or "")
                controller.login(name)
                await controller.initialize_transport()
                await controller.join_room()
            elif kind == "load_media":
                await controller.load_media(str(payload.get("source") or ""))
            elif kind == "start_broadcast":
                await controller.start_broadcast()
            elif kind == "stop_broadcast":
                await controller.stop_broadcast()
            elif kind == "gesture":
                await controller.perform_gesture()
            elif kind == "play":
                await controller.play()
            elif kind == "pause":
                await controller.pause()
            elif kind == "seek":
                await controller.seek(float(payload.get("seconds", 0.0)))
            elif kind == "kick":
                await controller.kick(str(payload.get("participant_id") or ""))
            elif kind == "chat_send":
                await controller.send_chat(str(payload.get("text") or ""))
            elif kind == "leave":
                await controller.teardown()
            else:
                logger.debug("Ignoring unknown UI message %r", kind)
                return
        except CaptureUnsupportedError:
            # already reported through the session listener
            return
        except AutoplayBlockedError as exc:
            await self._broadcast_error(str(exc), "autoplay_blocked")
            return
        except (SessionStateError, ValueError, TypeError) as exc:
            await self._broadcast_error(str(exc), "invalid_request")
            return
        except (ConnectionError, OSError) as exc:
            logger.warning("UI action %s failed: %s", kind, exc)
            await self._broadcast_error(str(exc), "connection_failed")
            return
        await self._ws_hub.broadcast({"type": "state_snapshot", "payload": controller.snapshot()})

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        logger.info("Session UI bridge listening on http://%s:%s", host, port)
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self._controller.teardown()

    async def stop(self) -> None:
        server = self._uvicorn_server
        if not server:
            return
        if getattr(server, "should_exit", False):
            return
        server.should_exit = True
        await asyncio.sleep(0)
