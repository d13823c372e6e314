"""FastAPI application for agora."""

import asyncio
import functools
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__, accounts, db, dms, fanout, invites, jobs, messages, protocol, servers
from .auth_provider import (
    AuthResult,
    extract_bearer_token,
    get_auth_method_name,
    verify_bearer_token,
)
from .cache import membership_cache
from .config import get_settings
from .errors import AgoraError, Unauthenticated
from .metrics import metrics
from .registry import get_registry
from .transport import get_transport

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and run the lease reaper while serving."""
    db.init_db()
    settings = get_settings()
    registry = get_registry()
    logger.info(f"Auth method: {get_auth_method_name()}")

    stop_event = asyncio.Event()
    reaper = None
    if settings.reap_interval > 0:
        reaper = asyncio.create_task(jobs.run_reaper(registry, settings.reap_interval, stop_event))

    yield

    stop_event.set()
    if reaper is not None:
        await reaper
    await fanout.drain_pending()
    await get_transport().close()
    db.close_db()


app = FastAPI(
    title="agora",
    description="Chat backend with real-time fan-out",
    version=__version__,
    lifespan=lifespan,
)


# --- Error Mapping ---


@app.exception_handler(AgoraError)
async def agora_error_handler(request: Request, exc: AgoraError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    detail = f"Invalid request: {location}: {message}" if location else f"Invalid request: {message}"
    return JSONResponse(status_code=400, content={"detail": detail})


# --- Request Timing Middleware ---


def _endpoint_name(path: str) -> str:
    """Collapse a request path to a low-cardinality metrics key."""
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "root"
    if parts[0] == "servers" and len(parts) >= 3:
        return f"servers/{parts[2]}"
    if parts[0] in ("dms", "invites") and len(parts) >= 3:
        return f"{parts[0]}/{parts[2]}"
    if parts[0] in ("auth", "users"):
        return "/".join(parts[:2])
    if parts[0] in ("servers", "dms", "invites", "health", "metrics", "ws"):
        return parts[0]
    return "other"


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    metrics.record_request(_endpoint_name(request.url.path), duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- DB Execution ---


async def _run_sync(fn, *args, **kwargs):
    """Run a synchronous function off the event loop.

    Uses the DB executor, which is single-threaded for libsql and for the
    shared in-memory database.
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(db.get_executor(), functools.partial(fn, *args, **kwargs))


# --- Authentication ---


async def current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> AuthResult:
    """Resolve the bearer token to a user, or fail with 401."""
    token = extract_bearer_token(authorization)
    if not token:
        raise Unauthenticated("Authorization header required")

    result = await _run_sync(verify_bearer_token, token)
    if not result.valid or not result.user_id:
        raise Unauthenticated(result.error or "Invalid token")
    return result


CurrentUser = Annotated[AuthResult, Depends(current_user)]


# --- Request Models ---


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class CreateServerRequest(BaseModel):
    name: str


class CreateChannelRequest(BaseModel):
    name: str
    channel_type: str = "text"


class SendMessageRequest(BaseModel):
    content: str


class CreateInviteRequest(BaseModel):
    expires_in_hours: int | None = None
    max_uses: int | None = None


class CreatePasswordRequest(BaseModel):
    password: str
    expires_in_hours: int | None = None


class JoinByNameRequest(BaseModel):
    server_name: str
    password: str


class StartConversationRequest(BaseModel):
    recipient_id: str = Field(min_length=1)


# --- Health and Metrics ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
async def get_metrics(user: CurrentUser):
    """Application metrics. Requires authentication."""
    settings = get_settings()
    return {
        **metrics.to_dict(),
        "registry_backend": settings.registry_backend,
        "caches": {"membership": membership_cache.stats()},
    }


# --- Auth ---


@app.post("/auth/register", status_code=201)
async def register(request: RegisterRequest):
    """Create an account and return a session token."""
    return await _run_sync(accounts.register, request.email, request.username, request.password)


@app.post("/auth/login")
async def login(request: LoginRequest):
    return await _run_sync(accounts.login, request.email, request.password)


@app.get("/auth/me")
async def me(user: CurrentUser):
    return {"id": user.user_id, "email": user.email, "username": user.username}


# --- Servers ---


@app.get("/servers")
async def list_servers(user: CurrentUser):
    """Servers the caller is a member of."""
    return await _run_sync(servers.list_user_servers, user.user_id)


@app.post("/servers", status_code=201)
async def create_server(request: CreateServerRequest, user: CurrentUser):
    return await _run_sync(servers.create_server, user.user_id, user.username or "", request.name)


@app.post("/servers/join")
async def join_server_by_name(request: JoinByNameRequest, user: CurrentUser):
    """Join a server using its exact name and a server password."""
    return await _run_sync(
        invites.join_by_name,
        request.server_name,
        request.password,
        user.user_id,
        user.username or "",
    )


@app.get("/servers/{server_id}")
async def get_server(server_id: str, user: CurrentUser):
    return await _run_sync(servers.get_server, server_id, user.user_id)


@app.get("/servers/{server_id}/channels")
async def list_channels(server_id: str, user: CurrentUser):
    return await _run_sync(servers.list_channels, server_id, user.user_id)


@app.post("/servers/{server_id}/channels", status_code=201)
async def create_channel(server_id: str, request: CreateChannelRequest, user: CurrentUser):
    """Create a channel. Owners and admins only."""
    return await _run_sync(
        servers.create_channel, server_id, user.user_id, request.name, request.channel_type
    )


@app.get("/servers/{server_id}/members")
async def list_members(server_id: str, user: CurrentUser):
    return await _run_sync(servers.list_members, server_id, user.user_id)


# --- Channel Messages ---


@app.get("/servers/{server_id}/channels/{channel_id}/messages")
async def list_channel_messages(
    server_id: str,
    channel_id: str,
    user: CurrentUser,
    limit: int | None = Query(None),
    before: int | None = Query(None),
):
    """Message history, newest first. Pass next_cursor back as `before`."""
    return await _run_sync(
        messages.list_messages, server_id, channel_id, user.user_id, limit=limit, before=before
    )


@app.post("/servers/{server_id}/channels/{channel_id}/messages", status_code=201)
async def send_channel_message(
    server_id: str,
    channel_id: str,
    request: SendMessageRequest,
    user: CurrentUser,
):
    """Send a message to a channel and push it to subscribed connections."""
    message = await _run_sync(
        messages.create_message,
        server_id,
        channel_id,
        user.user_id,
        user.username or "",
        request.content,
    )

    fanout.schedule_broadcast(fanout.NEW_MESSAGE, message, channel_id)
    return message


# --- Invites ---


@app.post("/servers/{server_id}/invites", status_code=201)
async def create_invite(
    server_id: str,
    user: CurrentUser,
    request: CreateInviteRequest | None = None,
):
    request = request or CreateInviteRequest()
    return await _run_sync(
        invites.create_invite,
        server_id,
        user.user_id,
        expires_in_hours=request.expires_in_hours,
        max_uses=request.max_uses,
    )


@app.get("/servers/{server_id}/invites")
async def list_invites(server_id: str, user: CurrentUser):
    return await _run_sync(invites.list_invites, server_id, user.user_id)


@app.delete("/servers/{server_id}/invites/{code}", status_code=204)
async def delete_invite(server_id: str, code: str, user: CurrentUser):
    await _run_sync(invites.delete_invite, server_id, code, user.user_id)
    return Response(status_code=204)


@app.get("/invites/{code}")
async def get_invite_info(code: str):
    """Public invite preview. No authentication required."""
    return await _run_sync(invites.get_invite_info, code)


@app.post("/invites/{code}/join")
async def join_invite(code: str, user: CurrentUser):
    return await _run_sync(invites.join_by_code, code, user.user_id, user.username or "")


# --- Server Passwords ---


@app.post("/servers/{server_id}/passwords", status_code=201)
async def create_server_password(server_id: str, request: CreatePasswordRequest, user: CurrentUser):
    """Create a join password. Server owner only."""
    return await _run_sync(
        invites.create_server_password,
        server_id,
        user.user_id,
        request.password,
        request.expires_in_hours,
    )


@app.get("/servers/{server_id}/passwords")
async def list_server_passwords(server_id: str, user: CurrentUser):
    return await _run_sync(invites.list_server_passwords, server_id, user.user_id)


@app.delete("/servers/{server_id}/passwords/{password_id}", status_code=204)
async def delete_server_password(server_id: str, password_id: str, user: CurrentUser):
    await _run_sync(invites.delete_server_password, server_id, password_id, user.user_id)
    return Response(status_code=204)


# --- Users and Direct Messages ---


@app.get("/users/search")
async def search_users(user: CurrentUser, q: str = ""):
    return await _run_sync(dms.search_users, q, user.user_id)


@app.get("/dms")
async def list_conversations(user: CurrentUser):
    """The caller's conversations, most recently active first."""
    return await _run_sync(dms.list_conversations, user.user_id)


@app.post("/dms")
async def start_conversation(request: StartConversationRequest, user: CurrentUser):
    return await _run_sync(
        dms.start_or_get_conversation, user.user_id, user.username or "", request.recipient_id
    )


@app.get("/dms/{conversation_id}")
async def get_conversation(conversation_id: str, user: CurrentUser):
    return await _run_sync(dms.get_conversation, conversation_id, user.user_id)


@app.get("/dms/{conversation_id}/messages")
async def list_dm_messages(
    conversation_id: str,
    user: CurrentUser,
    limit: int | None = Query(None),
    before: int | None = Query(None),
):
    return await _run_sync(
        dms.list_dm_messages, conversation_id, user.user_id, limit=limit, before=before
    )


@app.post("/dms/{conversation_id}/messages", status_code=201)
async def send_dm_message(conversation_id: str, request: SendMessageRequest, user: CurrentUser):
    """Send a direct message and push it to subscribed connections."""
    message: dict[str, Any] = await _run_sync(
        dms.send_dm_message,
        conversation_id,
        user.user_id,
        user.username or "",
        request.content,
    )

    fanout.schedule_broadcast(fanout.NEW_DM, message, conversation_id)
    return message


# --- Real-time ---


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = Query(None)):
    """Push connection. Authenticate with ?token=<session token>."""
    await protocol.serve_websocket(websocket, token, get_registry(), get_transport())
