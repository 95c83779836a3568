import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.requests import Request

from .assistant import AssistantScheduler
from .auth import (
    JWT_SECRET,
    RateLimiter,
    SessionGate,
    TokenCodec,
    check_login_rate_limit,
    issue_session_token,
    require_identity,
)
from .connection_registry import ConnectionRegistry
from .content_filter import filter_message, message_suggestions, validate_message
from .conversation_monitor import ConversationMonitor
from .finn import FINN_PROFILE, STREAM_RECOMMENDATIONS, ensure_finn
from .frames import MAX_MESSAGE_LENGTH, STREAM_NAME_PATTERN
from .message_store import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT, MessageStore
from .user_store import UsernameTaken, UserStore
from .ws_handler import ChatHub, websocket_chat

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("ECHO_DATA_DIR", str(PROJECT_ROOT / "data")))


# --- CORS Configuration ---

def _get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use default."""
    cors_origins_str = os.environ.get("ECHO_CORS_ORIGINS", "http://localhost:3000")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else ["http://localhost:3000"]


# --- Request models ---

class SignupRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    password: str = Field(..., min_length=6, max_length=128)
    happy_choice: str = Field("peaceful", max_length=50)
    bio: str = Field("", max_length=500)


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=30)
    password: str = Field(..., max_length=128)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=10)


class ModerationRequest(BaseModel):
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)


def _check_stream_name(name: str) -> None:
    if not re.match(STREAM_NAME_PATTERN, name):
        raise HTTPException(status_code=400, detail="Invalid stream name")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _public(messages) -> list[dict]:
    # Stores return newest first; clients render oldest first
    return [m.to_public().to_wire() for m in reversed(messages)]


def create_app(
    *,
    data_dir: Path | str | None = DATA_DIR,
    jwt_secret: str | None = JWT_SECRET,
    assistant: AssistantScheduler | None = None,
    registry: ConnectionRegistry | None = None,
) -> FastAPI:
    """Build the Echo chat app.

    ``data_dir=None`` keeps identities and chat history in memory only. Tests pass their own
    ``assistant`` (zero delay) and ``registry`` (short idle timeout).
    """
    user_store = UserStore(Path(data_dir) / "users.json" if data_dir else None)
    message_store = MessageStore(Path(data_dir) / "messages.json" if data_dir else None)
    codec = TokenCodec(jwt_secret)
    gate = SessionGate(codec, user_store)
    hub = ChatHub(
        registry=registry or ConnectionRegistry(),
        gate=gate,
        rate_limiter=RateLimiter(),
        monitor=ConversationMonitor(),
        assistant=assistant or AssistantScheduler(),
        message_store=message_store,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ensure_finn(user_store)
        hub.start()
        logger.info("Echo chat server started")
        try:
            yield
        finally:
            await hub.stop()
            logger.info("Echo chat server stopped")

    app = FastAPI(title="Echo Chat", lifespan=lifespan)
    app.state.user_store = user_store
    app.state.message_store = message_store
    app.state.codec = codec
    app.state.gate = gate
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Health ---

    @app.get("/api/health")
    async def api_health():
        return {"status": "ok", "connections": len(hub.registry)}

    # --- Accounts ---

    @app.post("/api/signup", status_code=201)
    async def api_signup(req: SignupRequest):
        try:
            identity = await user_store.create_user(
                req.username, req.password, happy_choice=req.happy_choice, bio=req.bio,
            )
        except UsernameTaken as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        token = await issue_session_token(user_store, codec, identity)
        return {"token": token, "user": identity.to_public_profile()}

    @app.post("/api/login")
    async def api_login(req: LoginRequest, request: Request):
        client_ip = request.client.host if request.client else "unknown"
        check_login_rate_limit(client_ip)
        identity = await user_store.verify_password(req.username, req.password)
        if identity is None:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        token = await issue_session_token(user_store, codec, identity)
        logger.info("User %s logged in", identity.username)
        return {"token": token, "user": identity.to_public_profile()}

    @app.post("/api/logout")
    async def api_logout(request: Request, identity=Depends(require_identity)):
        await user_store.remove_active_token(identity.id, request.state.token)
        return {"message": "Logged out"}

    # --- Chat history ---

    @app.get("/api/chat/world")
    async def api_world_history(
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
        before: datetime | None = None,
        identity=Depends(require_identity),
    ):
        messages = await message_store.world_history(limit, _as_utc(before))
        return {"messages": _public(messages)}

    @app.get("/api/chat/streams/{stream_name}")
    async def api_stream_history(
        stream_name: str,
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
        before: datetime | None = None,
        identity=Depends(require_identity),
    ):
        _check_stream_name(stream_name)
        messages = await message_store.stream_history(stream_name, limit, _as_utc(before))
        return {"streamName": stream_name, "messages": _public(messages)}

    @app.get("/api/chat/activity")
    async def api_chat_activity(
        hours: float = Query(24, gt=0, le=24 * 30),
        identity=Depends(require_identity),
    ):
        return {"activity": await message_store.recent_activity(hours)}

    @app.post("/api/chat/messages/{message_id}/reactions")
    async def api_add_reaction(message_id: str, req: ReactionRequest, identity=Depends(require_identity)):
        msg = await message_store.add_reaction(message_id, req.emoji, identity.username)
        if msg is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return {"message": msg.to_public().to_wire()}

    @app.delete("/api/chat/messages/{message_id}/reactions")
    async def api_remove_reaction(
        message_id: str,
        emoji: str = Query(..., min_length=1, max_length=10),
        identity=Depends(require_identity),
    ):
        msg = await message_store.remove_reaction(message_id, emoji, identity.username)
        if msg is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return {"message": msg.to_public().to_wire()}

    @app.delete("/api/chat/messages/{message_id}")
    async def api_delete_message(message_id: str, identity=Depends(require_identity)):
        msg = await message_store.get(message_id)
        if msg is None or msg.is_deleted:
            raise HTTPException(status_code=404, detail="Message not found")
        if msg.username != identity.username:
            raise HTTPException(status_code=403, detail="You can only delete your own messages")
        await message_store.soft_delete(message_id, identity.username)
        return {"message": "Message deleted"}

    # --- Moderation & FINN ---

    @app.post("/api/moderation/check")
    async def api_moderation_check(req: ModerationRequest):
        verdict = validate_message(req.message)
        verdict["suggestions"] = message_suggestions(filter_message(req.message, strict=True))
        return verdict

    @app.get("/api/finn")
    async def api_finn():
        return {"profile": FINN_PROFILE, "streamRecommendations": STREAM_RECOMMENDATIONS}

    # --- Persisted stream membership ---

    @app.post("/api/streams/{stream_name}/join")
    async def api_join_stream(stream_name: str, identity=Depends(require_identity)):
        _check_stream_name(stream_name)
        await user_store.join_stream(identity.id, stream_name)
        return {"joinedStreams": list(identity.joined_streams)}

    @app.post("/api/streams/{stream_name}/leave")
    async def api_leave_stream(stream_name: str, identity=Depends(require_identity)):
        _check_stream_name(stream_name)
        await user_store.leave_stream(identity.id, stream_name)
        return {"joinedStreams": list(identity.joined_streams)}

    # --- WebSocket chat ---

    @app.websocket("/ws")
    async def ws_chat(websocket: WebSocket):
        await websocket_chat(websocket, hub=hub)

    return app


app = create_app()
