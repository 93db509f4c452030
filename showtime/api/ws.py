"""
WebSocket manager for real-time check-in updates
"""

import json
import logging
from typing import Dict, List
from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

# Close code sent when the event behind a room does not exist (any more)
EVENT_GONE = 4004

class WebSocketManager:
    """Controller sockets grouped into one room per event"""

    def __init__(self):
        self.rooms: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, event_id: str):
        await websocket.accept()
        self.rooms.setdefault(event_id, []).append(websocket)
        logger.info("Controller joined event %s (%d connected)", event_id, len(self.rooms[event_id]))

    def disconnect(self, websocket: WebSocket, event_id: str):
        room = self.rooms.get(event_id)
        if not room or websocket not in room:
            return

        room.remove(websocket)
        logger.info("Controller left event %s (%d connected)", event_id, len(room))
        if not room:
            del self.rooms[event_id]

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.error("Could not reach controller socket: %s", e)

    async def broadcast_to_event(self, event_id: str, message: dict):
        """Send ``message`` to every socket in the event's room, dropping dead ones"""
        room = list(self.rooms.get(event_id, ()))
        if not room:
            logger.debug("No controllers connected to event %s", event_id)
            return

        dead = []
        for websocket in room:
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("Dropping controller socket of event %s: %s", event_id, e)
                dead.append(websocket)

        for websocket in dead:
            self.disconnect(websocket, event_id)

    async def close_room(self, event_id: str, reason: str = "Event deleted"):
        """Disconnect every socket of an event that no longer exists"""
        for websocket in self.rooms.pop(event_id, []):
            try:
                await websocket.close(code=EVENT_GONE, reason=reason)
            except RuntimeError:
                pass

    def get_connection_count(self, event_id: str) -> int:
        return len(self.rooms.get(event_id, []))

    def get_all_connection_counts(self) -> Dict[str, int]:
        return {event_id: len(room) for event_id, room in self.rooms.items()}

router = APIRouter()

@router.websocket("/events/{event_id}")
async def websocket_endpoint(websocket: WebSocket, event_id: str):
    """Live check-ins for one event; answers ``{"type": "ping"}`` heartbeats"""
    roster_service = websocket.app.state.roster_service
    websocket_manager: WebSocketManager = websocket.app.state.websocket_manager

    event = await run_in_threadpool(roster_service.store.find_event_by_id, event_id)
    if not event:
        await websocket.close(code=EVENT_GONE, reason="Event not found")
        return

    await websocket_manager.connect(websocket, event_id)

    try:
        await websocket_manager.send_personal_message({
            "type": "connection",
            "message": f"Connected to event: {event.name}",
            "event_id": event_id,
            "connection_count": websocket_manager.get_connection_count(event_id)
        }, websocket)

        while True:
            data = await websocket.receive_text()
            try:
                client_message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON controller message: %r", data[:200])
                continue

            if isinstance(client_message, dict) and client_message.get("type") == "ping":
                await websocket_manager.send_personal_message(
                    {"type": "pong", "timestamp": client_message.get("timestamp")}, websocket
                )

    except WebSocketDisconnect:
        pass
    finally:
        websocket_manager.disconnect(websocket, event_id)

@router.get("/stats")
async def websocket_stats(request: Request):
    """Connected controllers per event"""
    counts = request.app.state.websocket_manager.get_all_connection_counts()
    return {
        "total_events_with_connections": len(counts),
        "connection_counts": counts,
        "total_connections": sum(counts.values())
    }
