"""Identity store: accounts, persisted stream membership and live session tokens.

Backed by a single JSON file written atomically, following the same pattern
as the other file-backed stores. Pass ``filepath=None`` for a purely
in-memory store (tests, throwaway servers).
"""

import asyncio
import hmac
import json
import logging
import os
import re
import tempfile
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

logger = logging.getLogger(__name__)

# A 4th login silently displaces the oldest session.
MAX_ACTIVE_TOKENS = 3

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,30}$")
_MIN_PASSWORD_LENGTH = 6
_MAX_BIO_LENGTH = 500

# Argon2id cost, overridable for constrained hosts and test runs
ARGON2_TIME_COST = int(os.getenv("ECHO_ARGON2_TIME_COST", "3"))
ARGON2_MEMORY_COST = int(os.getenv("ECHO_ARGON2_MEMORY_COST", "65536"))  # KiB
ARGON2_PARALLELISM = int(os.getenv("ECHO_ARGON2_PARALLELISM", "1"))

_hasher = PasswordHasher(
    type=Type.ID,
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
)


class UsernameTaken(ValueError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def check_password(password: str, encoded: str) -> bool:
    """True if *password* matches the stored Argon2 hash; never raises on a bad hash."""
    if not encoded or not isinstance(encoded, str):
        return False
    try:
        return _hasher.verify(encoded, password)
    except (VerificationError, InvalidHashError):
        return False


@dataclass
class ActiveToken:
    token: str
    created_at: str = field(default_factory=_now_iso)


@dataclass
class Identity:
    id: str
    username: str
    password_hash: str
    happy_choice: str = "peaceful"
    bio: str = ""
    bloom: str = "🌸"
    bloom_style: str = "serene"
    color_palette: str = "sage"
    is_active: bool = True
    joined_streams: list[str] = field(default_factory=list)
    active_tokens: deque = field(default_factory=lambda: deque(maxlen=MAX_ACTIVE_TOKENS))
    created_at: str = field(default_factory=_now_iso)
    last_seen: str = field(default_factory=_now_iso)

    def has_active_token(self, token: str) -> bool:
        found = False
        for active in self.active_tokens:
            # Keep scanning after a hit so timing does not leak the position
            if hmac.compare_digest(active.token, token):
                found = True
        return found

    def to_public_profile(self) -> dict:
        return {
            "username": self.username,
            "bio": self.bio,
            "bloom": self.bloom,
            "bloomStyle": self.bloom_style,
            "colorPalette": self.color_palette,
            "happyChoice": self.happy_choice,
            "joinedStreams": list(self.joined_streams),
            "lastSeen": self.last_seen,
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["active_tokens"] = [asdict(t) for t in self.active_tokens]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Identity":
        data = dict(data)
        tokens = data.pop("active_tokens", [])
        identity = cls(**data)
        identity.active_tokens = deque(
            (ActiveToken(**t) for t in tokens), maxlen=MAX_ACTIVE_TOKENS
        )
        return identity


class UserStore:
    def __init__(self, filepath: str | Path | None = None):
        self.filepath = Path(filepath).resolve() if filepath else None
        self._users: dict[str, Identity] = {}
        self._lock = asyncio.Lock()
        self._load_sync()

    def _load_sync(self):
        if self.filepath is None or not self.filepath.exists():
            return
        try:
            with open(self.filepath, encoding="utf-8") as f:
                raw = json.load(f)
            self._users = {u["id"]: Identity.from_dict(u) for u in raw.get("users", [])}
        except (json.JSONDecodeError, OSError, KeyError, TypeError):
            logger.warning("Corrupt user store %s, starting fresh", self.filepath)
            self._users = {}

    def _save_sync(self):
        """Synchronous save; must be called via asyncio.to_thread()."""
        if self.filepath is None:
            return
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        payload = {"users": [u.to_dict() for u in self._users.values()]}
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.filepath.parent), suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _save(self):
        await asyncio.to_thread(self._save_sync)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_user(self, username: str, password: str, **profile) -> Identity:
        username = (username or "").strip()
        if not _USERNAME_RE.match(username):
            raise ValueError("Username must be 3-30 letters, numbers, underscores or hyphens")
        if not isinstance(password, str) or len(password) < _MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters long")
        if len(profile.get("bio", "")) > _MAX_BIO_LENGTH:
            raise ValueError(f"Bio cannot exceed {_MAX_BIO_LENGTH} characters")

        password_hash = await asyncio.to_thread(hash_password, password)
        async with self._lock:
            if any(u.username == username for u in self._users.values()):
                raise UsernameTaken("Username already taken")
            identity = Identity(id=uuid4().hex, username=username, password_hash=password_hash, **profile)
            self._users[identity.id] = identity
            await self._save()
        logger.info("Created user %s", username)
        return identity

    async def find_by_id(self, identity_id: str) -> Identity | None:
        async with self._lock:
            return self._users.get(identity_id)

    async def find_by_username(self, username: str) -> Identity | None:
        """Active accounts only, like every user-facing lookup."""
        async with self._lock:
            for identity in self._users.values():
                if identity.username == username and identity.is_active:
                    return identity
        return None

    async def verify_password(self, username: str, password: str) -> Identity | None:
        identity = await self.find_by_username(username)
        if identity is None:
            return None
        ok = await asyncio.to_thread(check_password, password, identity.password_hash)
        return identity if ok else None

    async def deactivate(self, identity_id: str) -> bool:
        async with self._lock:
            identity = self._users.get(identity_id)
            if identity is None:
                return False
            identity.is_active = False
            identity.active_tokens.clear()
            await self._save()
            return True

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    async def add_active_token(self, identity_id: str, token: str) -> None:
        async with self._lock:
            identity = self._users.get(identity_id)
            if identity is None:
                raise KeyError(identity_id)
            if len(identity.active_tokens) == MAX_ACTIVE_TOKENS:
                logger.info("Evicting oldest session token for %s", identity.username)
            identity.active_tokens.append(ActiveToken(token=token))
            identity.last_seen = _now_iso()
            await self._save()

    async def remove_active_token(self, identity_id: str, token: str) -> bool:
        async with self._lock:
            identity = self._users.get(identity_id)
            if identity is None:
                return False
            kept = [t for t in identity.active_tokens if not hmac.compare_digest(t.token, token)]
            if len(kept) == len(identity.active_tokens):
                return False
            identity.active_tokens = deque(kept, maxlen=MAX_ACTIVE_TOKENS)
            await self._save()
            return True

    # ------------------------------------------------------------------
    # Persisted stream membership
    # ------------------------------------------------------------------

    async def join_stream(self, identity_id: str, stream_name: str) -> bool:
        async with self._lock:
            identity = self._users.get(identity_id)
            if identity is None:
                raise KeyError(identity_id)
            if stream_name in identity.joined_streams:
                return False
            identity.joined_streams.append(stream_name)
            await self._save()
            return True

    async def leave_stream(self, identity_id: str, stream_name: str) -> bool:
        async with self._lock:
            identity = self._users.get(identity_id)
            if identity is None:
                raise KeyError(identity_id)
            if stream_name not in identity.joined_streams:
                return False
            identity.joined_streams.remove(stream_name)
            await self._save()
            return True
