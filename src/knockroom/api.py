"""FastAPI application for knockroom.

The server is a relay with a memory for exactly three things: which rooms
exist, which token hashes belong to them, and when each token was last
seen. It never sees room secrets or plaintext.

Usage:
    app = create_app()                              # options from the environment
    app = create_app(ServerOptions.for_testing())   # in-memory, for tests
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ._version import __version__
from .admission import AdmissionService
from .db import Store
from .errors import KnockroomError
from .events import EventBus, InMemoryEventBus, MercureEventBus, RoomEvent, format_sse
from .metrics import metrics
from .options import ConfigError, ServerOptions
from .presence import LIVENESS_WINDOW, Clock, PresenceTracker
from .registry import RoomRegistry

logger = logging.getLogger(__name__)


# --- Request/Response Models ---


class CreateRoomRequest(BaseModel):
    room_hash: Any = None


class CreateRoomResponse(BaseModel):
    status: str
    has_participants: bool
    participant_token: str | None = None


class KnockRequest(BaseModel):
    message: str | None = None


class RejectRequest(BaseModel):
    message: str | None = None


class MessageRequest(BaseModel):
    msg_id: str | None = None
    encrypted_payload: str | dict[str, Any] | None = None


class StatusResponse(BaseModel):
    status: str = "ok"


class ApproveResponse(BaseModel):
    new_participant_token: str


class PresenceResponse(BaseModel):
    status: str = "ok"
    active_participants: int


# --- Dependencies ---


def _admission(request: Request) -> AdmissionService:
    return request.app.state.admission


ChatToken = Annotated[str | None, Header(alias="X-Chat-Token")]


def build_event_bus(options: ServerOptions) -> EventBus:
    """Event bus selected by options.event_bus."""
    if options.event_bus == "mercure":
        if not (options.mercure_hub_url and options.mercure_publisher_key):
            raise ConfigError(
                "The mercure event bus needs MERCURE_HUB_URL and MERCURE_PUBLISHER_JWT_KEY."
            )
        logger.info("Publishing room events to Mercure hub at %s", options.mercure_hub_url)
        return MercureEventBus(options.mercure_hub_url, options.mercure_publisher_key)
    return InMemoryEventBus()


def _endpoint_name(path: str) -> str:
    """Collapse a request path into a metrics key without the room hash."""
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "other"
    if parts[0] == "rooms":
        if len(parts) == 1:
            return "rooms/create"
        return f"rooms/{parts[2]}" if len(parts) > 2 else "rooms/other"
    if parts[0] in ("health", "metrics"):
        return parts[0]
    return "other"


async def sse_frames(
    events: AsyncIterator[RoomEvent],
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Render a room subscription as text/event-stream frames.

    The first frame is always ``event: connected``. The subscription is
    closed when the consumer goes away.
    """
    yield format_sse("connected", "{}")
    try:
        async for event in events:
            if is_disconnected is not None and await is_disconnected():
                break
            yield format_sse(event.type, event.to_json())
    except asyncio.CancelledError:
        return
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


# --- Routes ---


router = APIRouter()


@router.post("/rooms", response_model=CreateRoomResponse, response_model_exclude_none=True)
async def create_room(request: Request, body: CreateRoomRequest | None = None):
    """Create a room (caller is auto-admitted) or report whether anyone is in it.

    201 with a participant token on create; 200 with liveness on exists.
    """
    registration = await _admission(request).register((body.room_hash if body else None) or "")
    status_code = 201 if registration.status == "created" else 200
    return JSONResponse(registration.to_dict(), status_code=status_code)


@router.post("/rooms/{room_hash}/knock", response_model=StatusResponse)
async def knock(room_hash: str, request: Request, body: KnockRequest | None = None):
    """Ask to be admitted. Anyone who knows the room hash may knock."""
    await _admission(request).knock(room_hash, body.message if body else None)
    return StatusResponse()


@router.post("/rooms/{room_hash}/approve", response_model=ApproveResponse)
async def approve(room_hash: str, request: Request, x_chat_token: ChatToken = None):
    """Mint a token for a knocker. The token is broadcast in the approve event."""
    new_token = await _admission(request).approve(room_hash, x_chat_token)
    return ApproveResponse(new_participant_token=new_token)


@router.post("/rooms/{room_hash}/reject", response_model=StatusResponse)
async def reject(
    room_hash: str,
    request: Request,
    body: RejectRequest | None = None,
    x_chat_token: ChatToken = None,
):
    await _admission(request).reject(room_hash, x_chat_token, body.message if body else None)
    return StatusResponse()


@router.post("/rooms/{room_hash}/message", response_model=StatusResponse)
async def send_message(
    room_hash: str,
    request: Request,
    body: MessageRequest | None = None,
    x_chat_token: ChatToken = None,
):
    """Relay an encrypted chat payload to the room."""
    await _admission(request).send_message(
        room_hash,
        x_chat_token,
        body.msg_id if body else None,
        body.encrypted_payload if body else None,
    )
    return StatusResponse()


@router.post("/rooms/{room_hash}/presence", response_model=PresenceResponse)
async def presence(room_hash: str, request: Request, x_chat_token: ChatToken = None):
    """Heartbeat. Returns how many participants are currently live."""
    count = await _admission(request).heartbeat(room_hash, x_chat_token)
    return PresenceResponse(active_participants=count)


@router.post("/rooms/{room_hash}/disband", response_model=StatusResponse)
async def disband(room_hash: str, request: Request, x_chat_token: ChatToken = None):
    """Delete the room and every token in it."""
    await _admission(request).disband(room_hash, x_chat_token)
    return StatusResponse()


@router.get("/rooms/{room_hash}/events")
async def room_events(room_hash: str, request: Request):
    """Server-Sent Events stream of a room's events.

    No token is needed: a knocker has to hear the approve event that
    carries its new token. Chat events only carry ciphertext.
    """
    events = await _admission(request).subscribe(room_hash)
    return StreamingResponse(
        sse_frames(events, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Get application metrics. Requires the admin token."""
    admin_token = request.app.state.options.admin_token
    if not admin_token or x_admin_token != admin_token:
        raise HTTPException(401, "Admin token required")
    return {**metrics.to_dict(), "store": request.app.state.store.stats()}


# --- Application factory ---


def create_app(
    options: ServerOptions | None = None,
    *,
    store: Store | None = None,
    bus: EventBus | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build an application with its own store, bus and services.

    Args:
        options: Server options; read from the environment when omitted.
        store: Pre-built store. The app does not close a store it was given.
        bus: Pre-built event bus.
        clock: Time source for presence and event timestamps.
    """
    options = options or ServerOptions()
    owns_store = store is None
    if store is None:
        store = Store(options.db_path or ":memory:")
    store.init_schema()
    if bus is None:
        bus = build_event_bus(options)

    presence_tracker = PresenceTracker(
        store,
        window=options.liveness_window or LIVENESS_WINDOW,
        clock=clock or time.time,
    )
    registry = RoomRegistry(store, presence_tracker)
    admission = AdmissionService(registry, presence_tracker, bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("knockroom starting: %s", options.to_dict())
        yield
        await bus.close()
        if owns_store:
            store.close()

    app = FastAPI(
        title="knockroom",
        description="Knock-to-enter end-to-end encrypted chat rooms",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.options = options
    app.state.store = store
    app.state.bus = bus
    app.state.presence = presence_tracker
    app.state.registry = registry
    app.state.admission = admission

    @app.exception_handler(KnockroomError)
    async def knockroom_error_handler(request: Request, exc: KnockroomError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.middleware("http")
    async def add_timing_middleware(request: Request, call_next):
        """Track request timing for metrics."""
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000
        metrics.record_request(_endpoint_name(request.url.path), duration_ms)
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
        return response

    app.include_router(router)
    return app
