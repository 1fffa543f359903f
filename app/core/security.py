from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from app.core.config import get_settings

OPERATOR_SCOPE = "operator"


def create_operator_token(subject: str, expires_delta: timedelta | None = None) -> str:
    """Bearer token for the approval, retry and fleet endpoints."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims = {"sub": subject, "scope": OPERATOR_SCOPE, "exp": expire}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_operator_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if claims.get("scope") != OPERATOR_SCOPE or not claims.get("sub"):
        raise ValueError("Token is not an operator token")
    return claims


def _fernet() -> Fernet:
    return Fernet(get_settings().encryption_key.encode("utf-8"))


def encrypt_refresh_token(token: str) -> str:
    if not token:
        return ""
    return _fernet().encrypt(token.encode("utf-8")).decode("utf-8")


def decrypt_refresh_token(stored: str) -> str:
    # Accounts that never finished OAuth have nothing stored.
    if not stored:
        return ""
    try:
        return _fernet().decrypt(stored.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored refresh token cannot be decrypted with the configured key") from exc
