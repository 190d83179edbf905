import asyncio
from typing import Dict, Set, Any

import anyio
import structlog
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = structlog.get_logger(__name__)


class RentalHub:
    """Fan-out of rental change events to the parties watching a rental."""

    def __init__(self) -> None:
        # rental_id (str) -> set of WebSocket connections
        self._rental_connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, rental_id: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._rental_connections.setdefault(rental_id, set())
            conns.add(ws)

    async def unsubscribe(self, rental_id: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._rental_connections.get(rental_id)
            if conns is not None:
                conns.discard(ws)
                if not conns:
                    self._rental_connections.pop(rental_id, None)

    async def publish(self, rental_id: str, event: str, payload: Any) -> None:
        data = {"event": event, "rental_id": rental_id, "data": payload}
        async with self._lock:
            targets = list(self._rental_connections.get(rental_id, set()))
        dead = []
        for ws in targets:
            try:
                await ws.send_json(data)
            except Exception:
                # best-effort; a socket that fails once is dropped
                dead.append(ws)
        for ws in dead:
            await self.unsubscribe(rental_id, ws)
        if dead:
            logger.info("rental_ws_dropped", rental_id=rental_id, event=event, dropped=len(dead))

    def subscriber_count(self, rental_id: str) -> int:
        return len(self._rental_connections.get(rental_id, ()))


# Global singleton hub
hub = RentalHub()


def notify(rental_id, event: str, payload: Any) -> None:
    """
    Publish from a sync route; FastAPI runs those in an anyio worker thread.

    Called after the change is committed, so nothing raised here may reach
    the caller.
    """
    data = jsonable_encoder(payload)

    async def _publish():
        await hub.publish(str(rental_id), event, data)

    try:
        anyio.from_thread.run(_publish)  # type: ignore
    except Exception:
        logger.warning("rental_notify_failed", rental_id=str(rental_id), event=event, exc_info=True)
