"""Process-local real-time fan-out.

Each WebSocket gets a connection id. A connection may register as a user
(one live connection per user, the latest registration wins) and may join
any number of topics. A user's own id is a topic as well, so events for a
user go to the connection(s) that registered under it.

Delivery is best effort: nothing is queued for offline users and nothing is
replayed on reconnect.
"""

import asyncio
import logging
import threading
import uuid
from typing import Any, Dict, Optional, Protocol, Set

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class FanOutRouter:
    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._user_connections: Dict[str, str] = {}
        self._topics: Dict[str, Set[str]] = {}

    def connect(self, websocket: Connection) -> str:
        conn_id = uuid.uuid4().hex
        with self._lock:
            self._connections[conn_id] = websocket
        return conn_id

    def register(self, user_id: str, conn_id: str) -> None:
        with self._lock:
            self._user_connections[user_id] = conn_id
            self._topics.setdefault(user_id, set()).add(conn_id)
        logger.info("Registered user %s on connection %s", user_id, conn_id)

    def join_room_topic(self, conn_id: str, room_id: str) -> None:
        with self._lock:
            self._topics.setdefault(room_id, set()).add(conn_id)

    def disconnect(self, conn_id: str) -> None:
        with self._lock:
            self._connections.pop(conn_id, None)
            for topic in list(self._topics):
                members = self._topics[topic]
                members.discard(conn_id)
                if not members:
                    del self._topics[topic]
            for user_id, mapped in self._user_connections.items():
                if mapped == conn_id:
                    del self._user_connections[user_id]
                    break

    def user_for(self, conn_id: str) -> Optional[str]:
        with self._lock:
            for user_id, mapped in self._user_connections.items():
                if mapped == conn_id:
                    return user_id
        return None

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._user_connections

    async def emit_to_user(self, user_id: str, event: str, payload: Any) -> int:
        with self._lock:
            if user_id not in self._user_connections:
                return 0
            targets = self._targets(user_id)
        return await self._send_all(targets, event, payload)

    async def emit_to_room(self, room_id: str, event: str, payload: Any) -> int:
        with self._lock:
            targets = self._targets(room_id)
        return await self._send_all(targets, event, payload)

    async def close(self) -> None:
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
            self._user_connections.clear()
            self._topics.clear()
        for ws in conns:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing connection during shutdown: %s", e)

    def _targets(self, topic: str) -> list:
        return [self._connections[c] for c in self._topics.get(topic, ()) if c in self._connections]

    async def _send_all(self, targets: list, event: str, payload: Any) -> int:
        if not targets:
            return 0
        frame = jsonable_encoder({"type": event, "payload": payload})
        results = await asyncio.gather(*(self._safe_send(ws, frame) for ws in targets))
        return sum(results)

    async def _safe_send(self, ws: Connection, frame: dict) -> bool:
        try:
            await ws.send_json(frame)
            return True
        except Exception as e:
            logger.warning("Dropped %s event: %s", frame.get("type"), e)
            return False
