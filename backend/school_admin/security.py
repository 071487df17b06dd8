import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
import jwt

from .config import settings


class AuthError(Exception):
    """Expected authentication or authorization failure.

    ``code`` is stable for callers that branch on the failure kind,
    ``status_code`` is what the HTTP layer answers with.
    """

    def __init__(self, message: str, code: str = "invalid_credentials", status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(
    subject: str, email: str, version: int = 0, expires_minutes: int | None = None
) -> tuple[str, datetime]:
    exp_minutes = expires_minutes or settings.jwt_exp_minutes
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "email": email,
        "ver": version,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=exp_minutes)).timestamp()),
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm), now


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if "sub" not in payload or "iat" not in payload:
            raise AuthError("Invalid token payload", code="invalid_token")
        return payload
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Token expired", code="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Invalid token", code="invalid_token") from exc


def generate_verification_token() -> str:
    return secrets.token_urlsafe(24)


def hash_verification_token(token: str) -> str:
    return hash_password(token)


def verify_verification_token(token: str, token_hash: str) -> bool:
    return verify_password(token, token_hash)
