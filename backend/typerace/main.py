import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError

from .cache import cache
from .coordinator import coordinator
from .db import settings
from .finalizer import finalizer
from .rooms import identity_resolver
from .schemas import InboundFrame, camelize
from .transport import Connection, gateway

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await coordinator.recover()
    sweeper = asyncio.create_task(coordinator.run_sweeper())
    yield
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await coordinator.shutdown()
    await cache.close()


app = FastAPI(title="TypeRace API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/rooms/{room_id}/race")
async def get_race(room_id: str):
    snapshot = coordinator.snapshot(room_id)
    if snapshot is None:
        raise HTTPException(404, "No race in this room")
    return camelize(snapshot)


@app.get("/api/races/{record_id}")
async def get_race_record(record_id: str):
    record = await finalizer.load_record(record_id)
    if record is None:
        raise HTTPException(404, "Race record not found")
    return camelize(record.model_dump())


@app.post("/api/admin/rooms/{room_id}/cancel")
async def cancel_race(room_id: str, _: None = Depends(require_admin)):
    messages = await coordinator.cancel(room_id, reason="admin")
    await gateway.deliver(messages)
    return {"cancelled": bool(messages)}


@app.websocket("/ws")
async def race_socket(websocket: WebSocket, token: Optional[str] = None):
    identity = await identity_resolver.resolve(token)
    if identity is None:
        await websocket.close(code=4401, reason="Authentication failed")
        return

    await websocket.accept()
    conn = Connection(identity, websocket.send_json)
    gateway.connect(conn)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = InboundFrame.model_validate_json(raw)
            except PydanticValidationError:
                await conn.send("error", {"message": "Malformed frame"})
                continue
            await gateway.handle(conn, frame.event, frame.data)
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(conn)
