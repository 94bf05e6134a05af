from contextlib import asynccontextmanager
from typing import Any, Optional
import json
import logging
import os

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError, field_validator

from notifier import MatchNotifier
from push_notifications import EXPO_PUSH_URL, ExpoPushService
from realtime import ConnectionHub, ConnectionLifecycle
from swipe_engine import STATUS_REJECTED, Session, SessionDirectory, SwipeLedger

logger = logging.getLogger("coupleswipe.realtime")

HOST = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
PORT = int(os.getenv("PORT", "4000"))
CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
PUSH_NOTIFICATIONS_ENABLED = os.getenv("PUSH_NOTIFICATIONS_ENABLED", "true").lower() in {"1", "true", "yes"}
PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

SESSIONS = SessionDirectory()
LEDGER = SwipeLedger()
HUB = ConnectionHub()
LIFECYCLE = ConnectionLifecycle(sessions=SESSIONS, hub=HUB)
PUSH_SERVICE = ExpoPushService(
    enabled=PUSH_NOTIFICATIONS_ENABLED,
    push_url=os.getenv("EXPO_PUSH_URL", EXPO_PUSH_URL),
    timeout_seconds=PUSH_TIMEOUT_SECONDS,
)
NOTIFIER = MatchNotifier(sessions=SESSIONS, hub=HUB, push=PUSH_SERVICE)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    PUSH_SERVICE.start_worker()
    try:
        yield
    finally:
        PUSH_SERVICE.stop_worker()
        # Jobs still queued at shutdown are sent before the process exits.
        PUSH_SERVICE.process_pending()


app = FastAPI(title="CoupleSwipe Match Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _id_to_str(value: Any) -> Any:
    # Mobile clients send numeric ids for some item sources.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class RegisterUserIn(BaseModel):
    user_id: str | None = None
    expoPushToken: str | None = None
    username: str | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _id_to_str(value)


class CoupleSwipeIn(BaseModel):
    user_id: str | None = None
    partner_id: str | None = None
    interested: bool | None = False
    id: str | None = None
    expoPushToken: str | None = None
    user_username: str | None = None
    partner_username: str | None = None
    item_type: str | None = None
    title: str | None = None
    image: str | None = None

    @field_validator("user_id", "partner_id", "id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _id_to_str(value)


def register_user(handle: str, body: RegisterUserIn) -> Optional[Session]:
    return LIFECYCLE.on_register(
        handle,
        user_id=body.user_id,
        push_address=body.expoPushToken,
        display_name=body.username,
    )


async def couple_swipe(handle: str, body: CoupleSwipeIn) -> str:
    logger.info(
        "swipe_received handle=%s user_id=%s partner_id=%s item_id=%s interested=%s item_type=%s",
        handle,
        body.user_id,
        body.partner_id,
        body.id,
        body.interested,
        body.item_type,
    )
    outcome = LEDGER.record_interest(
        item_id=body.id,
        user_id=body.user_id,
        interested=bool(body.interested),
        partner_id=body.partner_id,
        push_address=body.expoPushToken,
        item_type=body.item_type,
        title=body.title,
        image=body.image,
        user_display_name=body.user_username,
        partner_display_name=body.partner_username,
    )
    if outcome.matched:
        await NOTIFIER.notify(outcome)
    return outcome.status


EVENT_HANDLERS = {
    "registerUser": RegisterUserIn,
    "coupleSwipe": CoupleSwipeIn,
}


async def handle_frame(handle: str, raw: str) -> str | None:
    """Dispatch one inbound frame. Bad frames are logged and dropped."""
    try:
        frame = json.loads(raw)
    except ValueError:
        logger.error("frame_rejected reason=invalid_json handle=%s", handle)
        return None
    if not isinstance(frame, dict):
        logger.error("frame_rejected reason=not_an_object handle=%s", handle)
        return None

    event = frame.get("event")
    model = EVENT_HANDLERS.get(event)
    if model is None:
        logger.warning("frame_rejected reason=unknown_event handle=%s event=%r", handle, event)
        return None
    data = frame.get("data")
    try:
        body = model.model_validate(data if isinstance(data, dict) else {})
    except ValidationError as exc:
        logger.error("frame_rejected reason=invalid_payload handle=%s event=%s errors=%s", handle, event, exc.errors())
        return None

    if isinstance(body, RegisterUserIn):
        if register_user(handle, body) is None:
            return STATUS_REJECTED
        return "registered"
    return await couple_swipe(handle, body)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    handle = await LIFECYCLE.on_connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                logger.error("frame_rejected reason=binary handle=%s", handle)
                continue
            try:
                await handle_frame(handle, raw)
            except Exception:
                # One bad event must not take the connection down.
                logger.exception("frame_failed handle=%s", handle)
    finally:
        LIFECYCLE.on_disconnect(handle)


@app.get("/")
def health():
    return {"status": "ok", "service": "coupleswipe"}


@app.get("/status")
def status():
    return {
        "sessions": len(SESSIONS),
        "connections": len(HUB),
        "pending_items": LEDGER.pending_items(),
    }


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
