"""Authentication module: session tokens, the WebSocket session gate, rate limiting."""

import logging
import os
import secrets
import time
from collections import defaultdict
from dataclasses import dataclass
from uuid import uuid4

import jwt
from fastapi import HTTPException
from starlette.requests import Request

logger = logging.getLogger(__name__)

# --- Configuration ---

JWT_SECRET = os.environ.get("ECHO_JWT_SECRET") or ""
JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = int(os.environ.get("ECHO_TOKEN_TTL", str(7 * 24 * 60 * 60)))

WS_RATE_LIMIT = int(os.environ.get("ECHO_WS_RATE_LIMIT", "20"))
WS_RATE_WINDOW = float(os.environ.get("ECHO_WS_RATE_WINDOW", "60"))
_RATE_LIMIT_HIGH_WATER = 1000

# Login rate limiting: IP -> list of attempt timestamps
_login_attempts: dict[str, list[float]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5        # max attempts
_LOGIN_RATE_WINDOW = 60.0    # per this many seconds


# --- Errors ---

class AuthError(Exception):
    """Base class for every reason a session token is refused."""


class InvalidToken(AuthError):
    pass


class UserNotFound(AuthError):
    pass


class Inactive(AuthError):
    pass


class TokenRevoked(AuthError):
    pass


# --- Token codec ---

class TokenCodec:
    """Signs and verifies HS256 JWTs carrying the identity id."""

    def __init__(self, secret: str | None = None, *, algorithm: str = JWT_ALGORITHM):
        if not secret:
            logger.warning("ECHO_JWT_SECRET is not set; tokens will not survive a restart")
            secret = secrets.token_hex(32)
        self._secret = secret
        self.algorithm = algorithm

    def sign(self, claims: dict, ttl: int = TOKEN_TTL_SECONDS) -> str:
        now = int(time.time())
        payload = dict(claims)
        payload.update({"iat": now, "exp": now + ttl, "jti": uuid4().hex})
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> dict:
        try:
            return jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Token has expired") from e
        except jwt.PyJWTError as e:
            raise InvalidToken("Invalid token") from e


# --- Session gate ---

class SessionGate:
    """Checks a session token against the codec and the identity store."""

    def __init__(self, codec: TokenCodec, user_store):
        self.codec = codec
        self.user_store = user_store

    async def authenticate(self, token: str | None):
        if not token or not isinstance(token, str):
            raise InvalidToken("No token provided")
        claims = self.codec.verify(token)
        identity_id = claims.get("userId")
        if not identity_id:
            raise InvalidToken("Invalid token")

        identity = await self.user_store.find_by_id(identity_id)
        if identity is None:
            raise UserNotFound("User not found")
        if not identity.is_active:
            raise Inactive("User is inactive")
        # The store keeps only the newest few tokens per identity, so an
        # older login falls out of this list without being told.
        if not identity.has_active_token(token):
            raise TokenRevoked("Token is no longer valid")
        return identity


async def issue_session_token(user_store, codec: TokenCodec, identity) -> str:
    """Sign a token for *identity* and record it as one of its live sessions."""
    token = codec.sign({"userId": identity.id, "username": identity.username})
    await user_store.add_active_token(identity.id, token)
    return token


# --- Rate Limiting ---

@dataclass
class RateLimitRecord:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-window counter per key, separate from the HTTP login limiter."""

    def __init__(
        self,
        max_actions: int = WS_RATE_LIMIT,
        window_seconds: float = WS_RATE_WINDOW,
        *,
        high_water: int = _RATE_LIMIT_HIGH_WATER,
    ):
        self.max_actions = max_actions
        self.window_seconds = window_seconds
        self.high_water = high_water
        self._records: dict[str, RateLimitRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: str) -> RateLimitRecord | None:
        return self._records.get(key)

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        record = self._records.get(key)
        if record is None:
            record = RateLimitRecord(count=0, reset_at=now + self.window_seconds)
            self._records[key] = record
        elif now > record.reset_at:
            record.count = 0
            record.reset_at = now + self.window_seconds

        record.count += 1

        if len(self._records) > self.high_water:
            self._prune(now)

        return record.count <= self.max_actions

    def _prune(self, now: float) -> None:
        stale = [k for k, r in self._records.items() if now > r.reset_at]
        for k in stale:
            del self._records[k]


def check_login_rate_limit(client_ip: str) -> None:
    """Raise 429 if the IP has exceeded the login rate limit."""
    now = time.monotonic()
    attempts = _login_attempts[client_ip]
    cutoff = now - _LOGIN_RATE_WINDOW
    _login_attempts[client_ip] = [t for t in attempts if t > cutoff]
    if len(_login_attempts[client_ip]) >= _LOGIN_RATE_LIMIT:
        raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")
    _login_attempts[client_ip].append(now)


# --- Request Helpers ---

def get_token_from_request(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def require_identity(request: Request):
    """FastAPI dependency: resolve the caller's identity or raise 401."""
    token = get_token_from_request(request)
    try:
        identity = await request.app.state.gate.authenticate(token)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    request.state.token = token
    return identity
