"""WebSocket relay of the fleet event stream."""
import logging
from typing import Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from printfarm.schemas.events import FleetEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["Events"])


class ConnectionManager:
    """Holds connected WebSocket clients and their topic filters."""

    def __init__(self):
        self.connections: dict = {}

    async def connect(self, websocket: WebSocket, topics: Optional[Set[str]] = None):
        await websocket.accept()
        self.connections[websocket] = topics
        logger.info(f"WebSocket connected: topics={sorted(topics) if topics else 'all'}, total={len(self.connections)}")

    def disconnect(self, websocket: WebSocket):
        self.connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected, total={len(self.connections)}")

    async def broadcast(self, event: FleetEvent):
        """EventBus subscriber. Dead sockets are dropped."""
        message = event.model_dump(mode="json")
        disconnected = set()
        for websocket, topics in list(self.connections.items()):
            if topics and event.topic.value not in topics:
                continue
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send to WebSocket: {e}")
                disconnected.add(websocket)

        for ws in disconnected:
            self.disconnect(ws)


connection_manager = ConnectionManager()


@router.websocket("/events")
async def event_stream(websocket: WebSocket, topics: Optional[str] = Query(default=None)):
    """
    Streams fleet events. `topics` is an optional comma-separated filter,
    e.g. `?topics=device.anomaly,power.event`.
    """
    topic_filter = {t.strip() for t in topics.split(",") if t.strip()} if topics else None
    await connection_manager.connect(websocket, topic_filter)
    try:
        while True:
            # Client messages are ignored; this only detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        connection_manager.disconnect(websocket)
