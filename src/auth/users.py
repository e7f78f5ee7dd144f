"""
User accounts for the migration service.

Accounts are created by an admin (or scripts/bootstrap_admin.py); the
pipeline only reads the role to resolve quotas.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from config.settings import RoleQuota, settings
from src.auth.password import hash_password, verify_password
from src.core.errors import ValidationError
from src.db.engine import get_engine
from src.db.models import UserAccount

ROLES = ("basic", "premium", "admin")


def _to_dict(row: UserAccount) -> Dict[str, Any]:
    return {
        "user_id": row.user_id,
        "role": row.role or "basic",
        "is_active": bool(row.is_active),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def create_user(user_id: str, password: str, role: str = "basic") -> Dict[str, Any]:
    """Create an account; the password is stored as a bcrypt hash."""
    if not user_id or not password:
        raise ValidationError.invalid_field("user_id", "user_id and password are required")
    if role not in ROLES:
        raise ValidationError.invalid_field("role", f"role must be one of {', '.join(ROLES)}")
    with Session(get_engine()) as session:
        if session.get(UserAccount, user_id) is not None:
            raise ValidationError.invalid_field("user_id", f"user {user_id} already exists")
        row = UserAccount(user_id=user_id, password_hash=hash_password(password), role=role)
        session.add(row)
        session.commit()
        session.refresh(row)
        return _to_dict(row)


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    with Session(get_engine()) as session:
        row = session.get(UserAccount, user_id)
        return _to_dict(row) if row else None


def verify_credentials(user_id: str, password: str) -> bool:
    with Session(get_engine()) as session:
        row = session.get(UserAccount, user_id) if user_id else None
        if row is None or not row.is_active:
            return False
        return verify_password(password, row.password_hash)


def list_users() -> List[Dict[str, Any]]:
    with Session(get_engine()) as session:
        rows = session.exec(select(UserAccount).order_by(UserAccount.created_at)).all()
        return [_to_dict(r) for r in rows]


def set_role(user_id: str, role: str) -> Dict[str, Any]:
    if role not in ROLES:
        raise ValidationError.invalid_field("role", f"role must be one of {', '.join(ROLES)}")
    with Session(get_engine()) as session:
        row = session.get(UserAccount, user_id)
        if row is None:
            raise ValidationError.invalid_field("user_id", f"user {user_id} not found")
        row.role = role
        row.updated_at = datetime.now().isoformat()
        session.add(row)
        session.commit()
        session.refresh(row)
        return _to_dict(row)


def role_of(user_id: str) -> str:
    user = get_user(user_id)
    return (user or {}).get("role") or "basic"


def quota_for_user(user_id: str) -> RoleQuota:
    return settings.sessions.quota_for(role_of(user_id))
