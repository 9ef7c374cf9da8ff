"""Identity assertion verification dependency for FastAPI.

The external identity provider signs every request it forwards with its
Ed25519 key. The signature covers the timestamp, method, path and a hash of
the body, so the asserted user id cannot be lifted onto another request.
"""

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.redis import get_redis
from app.services.users import provision_user
from app.utils.crypto import is_timestamp_valid, verify_signature

SCHEME = "Identity "


class AuthenticatedUser:
    """Container for the verified caller."""

    def __init__(self, user_id: str, user: User) -> None:
        self.user_id = user_id
        self.user = user


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedUser:
    """Verify the identity provider's signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=401, detail="Missing authentication headers")

    # Authorization: Identity <user_id>:<signature>
    if not auth_header.startswith(SCHEME):
        raise HTTPException(status_code=401, detail="Invalid authorization scheme")
    user_id, sep, signature = auth_header[len(SCHEME):].rpartition(":")
    if not sep or not user_id or not signature:
        raise HTTPException(status_code=401, detail="Malformed authorization header")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=401, detail="Request timestamp expired")

    body = await request.body()
    if not verify_signature(
        settings.identity_public_key,
        signature,
        timestamp,
        request.method.upper(),
        request.url.path,
        body,
        subject=user_id,
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    # Replay protection, checked only after the signature so strangers cannot burn nonces
    if nonce:
        fresh = await redis.set(f"nonce:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not fresh:
            raise HTTPException(status_code=401, detail="Nonce already used")

    user = await provision_user(db, user_id, request.headers.get("X-User-Email"))
    return AuthenticatedUser(user_id=user_id, user=user)
