"""
FormPilot - WebSocket Real-Time Feed
Streams session events (action state changes, cycle progress, intervention
requests) to connected clients.

Connect to: ws://localhost:8000/api/v1/ws/sessions/{session_id}

Events already published for the session are replayed on connect, then new
ones are pushed as they happen. Clients may send:
{"action": "ping"}
{"action": "intervention_response", "response": "..."}
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from formpilot.services.events import Event, EventBus
from formpilot.services.execution import SessionRunner, get_session_runner

router = APIRouter()
logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Control messages (event payloads carry their own type)."""
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


class ConnectionManager:
    """
    Manages WebSocket connections and event broadcasting.

    Features:
    - Multiple clients per session
    - Event bus subscription (sync callback, async fan-out)
    - History replay on connect, with live events held back until it ends
    - Automatic cleanup on disconnect
    """

    def __init__(self):
        # Map: session_id -> Set[WebSocket]
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self.connection_metadata: Dict[WebSocket, Dict[str, Any]] = {}
        # Live messages for sockets still receiving their replay
        self._held: Dict[WebSocket, List[Dict[str, Any]]] = {}
        self._send_tasks: Set[asyncio.Task] = set()
        self._bus: Optional[EventBus] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, bus: EventBus) -> None:
        """Start forwarding events from this bus (once per bus)."""
        if self._bus is bus:
            return
        if self._unsubscribe:
            self._unsubscribe()
        self._bus = bus
        self._unsubscribe = bus.subscribe(self._on_event)

    def _on_event(self, event: Event) -> None:
        if not event.session_id or event.session_id not in self.active_connections:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        # Sockets that connect after this point get the event from their replay
        targets = set(self.active_connections[event.session_id])
        task = loop.create_task(self.broadcast_to_session(event.session_id, event.to_dict(), targets))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def connect(
        self,
        websocket: WebSocket,
        session_id: str,
        client_id: Optional[str] = None,
    ):
        """Accept a connection, subscribe it to one session and replay its past events."""
        await websocket.accept()

        client_id = client_id or str(uuid.uuid4())
        self.connection_metadata[websocket] = {
            "client_id": client_id,
            "session_id": session_id,
            "connected_at": datetime.utcnow().isoformat(),
        }
        replay = [event.to_dict() for event in self._bus.events_for(session_id)] if self._bus else []
        self._held[websocket] = []
        self.active_connections.setdefault(session_id, set()).add(websocket)

        try:
            await self._send(websocket, {
                "type": MessageType.CONNECTED.value,
                "client_id": client_id,
                "timestamp": datetime.utcnow().isoformat(),
            })
            await self._send(websocket, {
                "type": MessageType.SUBSCRIBED.value,
                "session_id": session_id,
                "timestamp": datetime.utcnow().isoformat(),
            })
            for message in replay:
                await self._send(websocket, message)

            held = self._held.get(websocket, [])
            while held:
                await self._send(websocket, held.pop(0))
        finally:
            self._held.pop(websocket, None)

    def disconnect(self, websocket: WebSocket):
        """Handle WebSocket disconnection."""
        self._held.pop(websocket, None)
        metadata = self.connection_metadata.pop(websocket, None)
        if not metadata:
            return
        session_id = metadata["session_id"]
        connections = self.active_connections.get(session_id)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[session_id]

    async def broadcast_to_session(
        self,
        session_id: str,
        message: Dict[str, Any],
        targets: Optional[Set[WebSocket]] = None,
    ):
        """Send a message to every client watching a session (or just `targets`)."""
        disconnected = set()
        for websocket in list(self.active_connections.get(session_id, ())):
            if targets is not None and websocket not in targets:
                continue
            held = self._held.get(websocket)
            if held is not None:
                held.append(message)
                continue
            try:
                await self._send(websocket, message)
            except Exception:
                disconnected.add(websocket)

        for ws in disconnected:
            self.disconnect(ws)

    async def _send(self, websocket: WebSocket, message: Dict[str, Any]):
        await websocket.send_json(message)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/sessions/{session_id}")
async def session_websocket(
    websocket: WebSocket,
    session_id: str,
    client_id: Optional[str] = Query(None),
    runner: SessionRunner = Depends(get_session_runner),
):
    """Dedicated feed for one session."""
    manager.attach(runner.event_bus)
    try:
        await manager.connect(websocket, session_id, client_id)
        while True:
            data = await websocket.receive_json()
            action = data.get("action")

            if action == "ping":
                await websocket.send_json({
                    "type": MessageType.PONG.value,
                    "timestamp": datetime.utcnow().isoformat(),
                })

            elif action == "intervention_response":
                try:
                    runner.resume(session_id, data.get("response"))
                except (KeyError, ValueError) as e:
                    await websocket.send_json({"type": MessageType.ERROR.value, "detail": str(e)})

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception:
        logger.exception(f"[WebSocket] Error on session {session_id} feed")
        manager.disconnect(websocket)
