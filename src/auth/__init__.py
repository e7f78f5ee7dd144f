# Auth: password hashing, JWT tokens, user accounts
from src.auth.password import hash_password, verify_password
from src.auth.session import (
    create_token,
    decode_token,
    verify_token,
    revoke_token,
    purge_expired_revocations,
)

__all__ = [
    "hash_password",
    "verify_password",
    "create_token",
    "decode_token",
    "verify_token",
    "revoke_token",
    "purge_expired_revocations",
]
