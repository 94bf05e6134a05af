from __future__ import annotations

from typing import Any, Dict, Optional
import asyncio
import logging
import uuid

from fastapi import WebSocket

from swipe_engine import Session, SessionDirectory

logger = logging.getLogger("coupleswipe.realtime")


class ConnectionHub:
    """Opaque connection handle -> live WebSocket."""

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}

    def add(self, websocket: WebSocket) -> str:
        handle = uuid.uuid4().hex[:16]
        self._connections[handle] = websocket
        return handle

    def remove(self, handle: str) -> None:
        self._connections.pop(handle, None)

    def get(self, handle: str) -> Optional[WebSocket]:
        return self._connections.get(handle)

    def __len__(self) -> int:
        return len(self._connections)

    async def emit(self, handle: str, event: str, data: Dict[str, Any]) -> bool:
        """Best-effort send; a stale handle or closed socket only logs."""
        websocket = self._connections.get(handle)
        if websocket is None:
            logger.info("emit_skip stale_handle handle=%s event=%s", handle, event)
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("emit_failed handle=%s event=%s", handle, event)
            return False
        return True


class ConnectionLifecycle:
    def __init__(self, *, sessions: SessionDirectory, hub: ConnectionHub) -> None:
        self.sessions = sessions
        self.hub = hub

    async def on_connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        handle = self.hub.add(websocket)
        logger.info("connection_opened handle=%s", handle)
        return handle

    def on_register(
        self,
        handle: str,
        *,
        user_id: str | None,
        push_address: str | None = None,
        display_name: str | None = None,
    ) -> Optional[Session]:
        user_norm = (user_id or "").strip()
        if not user_norm:
            logger.error("register_rejected reason=missing_user_id handle=%s", handle)
            return None
        return self.sessions.register(user_norm, handle, push_address, display_name)

    def on_disconnect(self, handle: str) -> Optional[str]:
        self.hub.remove(handle)
        user_id = self.sessions.remove_by_connection(handle)
        logger.info("connection_closed handle=%s user_id=%s", handle, user_id)
        return user_id
