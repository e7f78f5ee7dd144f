"""
Auth API: login/logout, admin user management, and the bearer-token
dependencies the other routers use.
"""

from fastapi import APIRouter, Depends, Header

from config.settings import settings
from src.api.schemas import CreateUserRequest, LoginRequest, LoginResponse, SetRoleRequest, UserItem
from src.auth.session import create_token, revoke_token, verify_token
from src.auth.users import create_user, get_user, list_users, set_role, verify_credentials
from src.core.errors import AuthError

router = APIRouter(prefix="/auth", tags=["auth"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def _get_token_from_header(authorization: str | None = Header(None)) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


def get_current_user(authorization: str | None = Header(None)) -> str:
    """Dependency: require valid token, return user_id."""
    token = _get_token_from_header(authorization)
    if not token:
        raise AuthError.required()
    user_id = verify_token(token)
    if not user_id:
        raise AuthError.invalid_token()
    user = get_user(user_id)
    if not user or not user.get("is_active", True):
        raise AuthError.invalid_token()
    return user_id


def get_current_admin(authorization: str | None = Header(None)) -> str:
    """Dependency: require valid token and role=admin."""
    user_id = get_current_user(authorization)
    profile = get_user(user_id)
    if not profile or profile.get("role") != "admin":
        raise AuthError.forbidden("Admin required")
    return user_id


@router.post("/login", response_model=LoginResponse)
def login(body: LoginRequest) -> LoginResponse:
    if not verify_credentials(body.user_id, body.password):
        raise AuthError.invalid_token()
    profile = get_user(body.user_id) or {}
    role = profile.get("role") or "basic"
    token = create_token(body.user_id, role=role, expire_hours=settings.auth.token_expire_hours)
    return LoginResponse(token=token, user_id=body.user_id, role=role)


@router.post("/logout")
def logout(authorization: str | None = Header(None), _user_id: str = Depends(get_current_user)) -> dict:
    token = _get_token_from_header(authorization)
    return {"revoked": bool(token and revoke_token(token))}


@router.get("/me", response_model=UserItem)
def me(user_id: str = Depends(get_current_user)) -> UserItem:
    return UserItem(**get_user(user_id))


@admin_router.post("/users", response_model=UserItem)
def admin_create_user(
    body: CreateUserRequest,
    _admin_id: str = Depends(get_current_admin),
) -> UserItem:
    return UserItem(**create_user(user_id=body.user_id, password=body.password, role=body.role))


@admin_router.get("/users", response_model=list[UserItem])
def admin_list_users(
    _admin_id: str = Depends(get_current_admin),
) -> list[UserItem]:
    return [UserItem(**u) for u in list_users()]


@admin_router.put("/users/{user_id}/role", response_model=UserItem)
def admin_set_role(
    user_id: str,
    body: SetRoleRequest,
    _admin_id: str = Depends(get_current_admin),
) -> UserItem:
    return UserItem(**set_role(user_id, body.role))
