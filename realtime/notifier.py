import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field

import config
from realtime.events import KEEPALIVE_FRAME, format_sse, parse_event

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    id: str
    user_id: str
    queue: asyncio.Queue = field(repr=False)

    def send(self, frame: str):
        self.queue.put_nowait(frame)


class RealtimeNotifier:
    """Fans realtime events out to live per-user connections.

    Delivery is fire-and-forget: each connection has its own bounded queue,
    a failing or full connection only loses its own frame, and nothing is
    replayed to clients that reconnect.
    """

    def __init__(self, queue_size: int = config.SSE_QUEUE_SIZE):
        self.queue_size = queue_size
        self._connections: dict[str, Connection] = {}

    def connect(self, user_id: str) -> Connection:
        conn = Connection(
            id=f"{user_id}:{uuid.uuid4()}",
            user_id=user_id,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._connections[conn.id] = conn
        logger.info("Realtime client connected: %s", conn.id)
        return conn

    def disconnect(self, conn: Connection):
        if self._connections.pop(conn.id, None) is not None:
            logger.info("Realtime client disconnected: %s", conn.id)

    def _deliver(self, connections, frame: str) -> int:
        delivered = 0
        for conn in connections:
            try:
                conn.send(frame)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Dropping frame for slow client %s", conn.id)
            except Exception:
                logger.exception("Failed to deliver frame to %s", conn.id)
        return delivered

    async def broadcast(self, event: str, payload: dict) -> int:
        frame = format_sse(parse_event(event, payload))
        return self._deliver(list(self._connections.values()), frame)

    async def broadcast_to_user(self, user_id: str, event: str, payload: dict) -> int:
        frame = format_sse(parse_event(event, payload))
        targets = [c for c in self._connections.values() if c.user_id == user_id]
        return self._deliver(targets, frame)

    def send_keepalive(self) -> int:
        return self._deliver(list(self._connections.values()), KEEPALIVE_FRAME)

    async def run_keepalive(self, interval: float = config.SSE_KEEPALIVE_SECS):
        while True:
            await asyncio.sleep(interval)
            self.send_keepalive()

    def client_count(self) -> int:
        return len(self._connections)

    def client_details(self) -> dict:
        counts = Counter(c.user_id for c in self._connections.values())
        return {"totalCount": len(self._connections), "userCounts": dict(counts)}

    def has_active_connections(self, user_id: str) -> bool:
        return any(c.user_id == user_id for c in self._connections.values())
