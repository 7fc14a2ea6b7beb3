import hashlib
import hmac

from fastapi import Header, HTTPException

from machine_controller.config import get_settings


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def secure_compare_token(token: str, expected: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(hash_token(token), hash_token(expected))


def require_api_token(authorization: str | None = Header(default=None)) -> None:
    """FastAPI dependency guarding endpoints that change stored objects."""
    expected = get_settings().api_token
    if not expected:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    if not secure_compare_token(authorization.split(" ", 1)[1], expected):
        raise HTTPException(status_code=401, detail="invalid api token")
