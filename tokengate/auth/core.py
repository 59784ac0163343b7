from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import jwt

from ..config import settings

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode(), hashed.encode())


# ---------------------------------------------------------------------------
# JWT (owner sessions for the token management routes)
# ---------------------------------------------------------------------------

ALGORITHM = "HS256"


def create_access_token(subject: str, secret: str, expires_minutes: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": subject,          # account email
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> dict:
    """Decode and validate JWT. Raises JWTError on failure."""
    return jwt.decode(token, secret, algorithms=[ALGORITHM])


# ---------------------------------------------------------------------------
# API token format: sh_live_<32 chars of [A-Za-z0-9_-]>
# ---------------------------------------------------------------------------

TOKEN_PREFIX = "sh_live_"
TOKEN_BODY_LENGTH = 32
# Stored in clear next to the hash to narrow bcrypt candidates
LOOKUP_PREFIX_LENGTH = 8

_BODY_RE = re.compile(r"[A-Za-z0-9_-]{%d}" % TOKEN_BODY_LENGTH)


def generate_api_token() -> str:
    # 24 random bytes encode to exactly 32 URL-safe base64 characters
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(24)}"


def is_valid_token_format(token: str) -> bool:
    if not token.startswith(TOKEN_PREFIX):
        return False
    return _BODY_RE.fullmatch(token[len(TOKEN_PREFIX):]) is not None


def extract_lookup_prefix(token: str) -> str:
    return token[len(TOKEN_PREFIX):][:LOOKUP_PREFIX_LENGTH]


def hash_api_token(token: str, rounds: int | None = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.token_hash_rounds)
    return bcrypt.hashpw(token.encode(), salt).decode()


def verify_api_token(token: str, hashed: str) -> bool:
    return bcrypt.checkpw(token.encode(), hashed.encode())
