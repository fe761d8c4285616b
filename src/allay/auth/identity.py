"""Identity: password hashing, signed tokens and server-side sessions.

A session token is a PyJWT HS256 token (claims: sub, email, jti, iat, exp).
Every issued token is also stored as a Session row so logout can revoke it
before it expires. A request is authenticated only when both the signature
and the Session row are valid.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
import jwt
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from allay.config import settings
from allay.core.outcome import Outcome
from allay.db.models import Session, User, as_utc, utcnow

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════════════════════
# PASSWORDS
# ═══════════════════════════════════════════════════════════════════════════════

def hash_password(password: str) -> str:
    """Hash a password with bcrypt; returns the UTF-8 hash for storage."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored hash is not a bcrypt hash
        return False


# ═══════════════════════════════════════════════════════════════════════════════
# TOKENS
# ═══════════════════════════════════════════════════════════════════════════════

def issue_token(claims: dict[str, Any], ttl: timedelta) -> str:
    """Sign ``claims`` into a JWT valid for ``ttl``.

    A random ``jti`` is added so two tokens issued in the same second for
    the same subject never collide.
    """
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "jti": secrets.token_hex(8),
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any] | None:
    """Return the token's claims, or None if it is invalid or expired."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        logger.info("token_expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("token_invalid", error=str(e))
        return None


def extract_token(authorization: str | None, cookies: dict[str, str]) -> str | None:
    """Pull the session token from ``Authorization: Bearer`` or the session cookie."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    cookie = cookies.get(settings.session_cookie_name)
    return cookie or None


# ═══════════════════════════════════════════════════════════════════════════════
# IDENTITY SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuthResult:
    user: dict[str, Any]
    token: str
    expires_at: datetime


def user_projection(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
    }


class IdentityService:
    """Registration, login, logout and session validation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from allay.db.session import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Outcome[AuthResult]:
        email = email.strip().lower()
        async with self._session_factory() as db:
            existing = await db.execute(select(User.id).where(User.email == email))
            if existing.scalar_one_or_none() is not None:
                return Outcome.conflict("User with this email already exists")

            user = User(
                email=email,
                password_hash=hash_password(password),
                first_name=first_name,
                last_name=last_name,
            )
            db.add(user)
            try:
                await db.flush()
            except IntegrityError:
                # Race condition: the same email registered concurrently
                await db.rollback()
                return Outcome.conflict("User with this email already exists")

            result = self._open_session(db, user, ip_address, user_agent)
            await db.commit()

        logger.info("user_registered", user_id=user.id)
        return Outcome.success(result)

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Outcome[AuthResult]:
        email = email.strip().lower()
        async with self._session_factory() as db:
            row = await db.execute(
                select(User).where(User.email == email, User.is_active.is_(True))
            )
            user = row.scalar_one_or_none()
            if user is None or not verify_password(password, user.password_hash):
                logger.info("login_rejected", email=email)
                return Outcome.forbidden("Invalid credentials")

            result = self._open_session(db, user, ip_address, user_agent)
            await db.commit()

        logger.info("user_logged_in", user_id=user.id)
        return Outcome.success(result)

    def _open_session(
        self,
        db: AsyncSession,
        user: User,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthResult:
        ttl = timedelta(days=settings.session_ttl_days)
        token = issue_token({"sub": user.id, "email": user.email}, ttl)
        expires_at = utcnow() + ttl
        db.add(
            Session(
                user_id=user.id,
                token=token,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
                expires_at=expires_at,
            )
        )
        return AuthResult(user=user_projection(user), token=token, expires_at=expires_at)

    async def logout(self, token: str) -> bool:
        """Invalidate the session for ``token``. Returns True if one was active."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Session)
                .where(Session.token == token, Session.is_active.is_(True))
                .values(is_active=False)
            )
            await db.commit()
        return bool(result.rowcount)

    async def validate(self, token: str) -> User | None:
        """Resolve a token to its active user, or None.

        Checks the signature, the Session row (active, not expired) and
        that the user is still active.
        """
        claims = verify_token(token)
        if claims is None:
            return None

        async with self._session_factory() as db:
            row = await db.execute(
                select(Session, User)
                .join(User, User.id == Session.user_id)
                .where(Session.token == token, Session.is_active.is_(True))
            )
            found = row.first()
            if found is None:
                return None
            session, user = found
            if as_utc(session.expires_at) < utcnow():
                return None
            if not user.is_active or user.id != claims.get("sub"):
                return None
            return user


_identity: IdentityService | None = None


def get_identity_service() -> IdentityService:
    """Get or create the singleton IdentityService."""
    global _identity
    if _identity is None:
        _identity = IdentityService()
    return _identity
