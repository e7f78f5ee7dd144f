"""JWT access tokens for the migration API.

Tokens are stateless HS256 JWTs carrying the user id (``sub``) and role, so
any API replica or worker can validate them without shared state. Logout
writes the SHA-256 of the token to ``revoked_tokens``; that table is only
consulted after the signature check passes.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config.settings import settings
from src.db.engine import get_engine
from src.db.models import RevokedToken
from src.log import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"


def _secret() -> str:
    return settings.auth.secret_key


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _is_revoked(token: str) -> bool:
    try:
        with Session(get_engine()) as session:
            return session.get(RevokedToken, _token_hash(token)) is not None
    except SQLAlchemyError:
        # fail open: an unavailable DB must not lock every user out
        logger.warning("revocation table unavailable during verify_token; treating token as not revoked")
        return False


def create_token(user_id: str, role: str = "basic", expire_hours: Optional[float] = None) -> str:
    """Sign a token for *user_id*; lifetime defaults to ``auth.token_expire_hours``."""
    hours = expire_hours if expire_hours is not None else settings.auth.token_expire_hours
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, _secret(), algorithm=_ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Return the verified claims, or None when expired, tampered or revoked."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, _secret(), algorithms=[_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if not payload.get("sub"):
        return None
    if _is_revoked(token):
        return None
    return payload


def verify_token(token: str) -> Optional[str]:
    payload = decode_token(token)
    return payload["sub"] if payload else None


def revoke_token(token: str) -> bool:
    """Persist the token hash so it can no longer be used. Expired tokens may be revoked too."""
    if not token:
        return False
    try:
        payload = jwt.decode(token, _secret(), algorithms=[_ALGORITHM], options={"verify_exp": False})
    except jwt.InvalidTokenError:
        return False

    exp = payload.get("exp")
    expires_at = (
        datetime.fromtimestamp(exp, tz=timezone.utc) if exp is not None else datetime.now(tz=timezone.utc)
    ).isoformat()

    h = _token_hash(token)
    try:
        with Session(get_engine()) as session:
            if session.get(RevokedToken, h) is None:
                session.add(RevokedToken(
                    token_hash=h,
                    expires_at=expires_at,
                    revoked_at=datetime.now(tz=timezone.utc).isoformat(),
                ))
                session.commit()
        return True
    except SQLAlchemyError:
        logger.exception("Failed to persist token revocation")
        return False


def purge_expired_revocations() -> int:
    """Delete revocation rows whose token has expired anyway. Returns the count."""
    cutoff = datetime.now(tz=timezone.utc).isoformat()
    try:
        with Session(get_engine()) as session:
            rows = session.exec(select(RevokedToken).where(RevokedToken.expires_at < cutoff)).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)
    except SQLAlchemyError:
        logger.exception("Failed to purge expired token revocations")
        return 0
