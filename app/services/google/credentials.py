import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import AuthFailure
from app.core.security import decrypt_refresh_token
from app.models.account import GoogleAccount

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True, slots=True)
class BearerCredential:
    access_token: str
    expires_at: datetime

    @property
    def authorization(self) -> str:
        return f"Bearer {self.access_token}"


class CredentialProvider(Protocol):
    def get_valid_credential(self, account_id: str) -> BearerCredential: ...


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GoogleCredentialProvider:
    """Hands out a bearer token, refreshing it when it expires within the margin."""

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.client = client or httpx.Client()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def get_valid_credential(self, account_id: str) -> BearerCredential:
        account = self.db.scalar(select(GoogleAccount).where(GoogleAccount.id == account_id))
        if not account:
            raise AuthFailure(f"Google account not found: {account_id}")
        if not account.encrypted_refresh_token:
            raise AuthFailure(f"No refresh token found for Google account: {account_id}")

        now = self.clock()
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        if account.access_token and account.expiry_date and _aware(account.expiry_date) - now > margin:
            return BearerCredential(account.access_token, _aware(account.expiry_date))

        logger.info("token_refresh_started", extra={"account_id": account_id})
        return self._refresh(account, now)

    def _refresh(self, account: GoogleAccount, now: datetime) -> BearerCredential:
        try:
            refresh_token = decrypt_refresh_token(account.encrypted_refresh_token or "")
        except ValueError as exc:
            raise AuthFailure(f"Stored refresh token for {account.id} is unreadable") from exc

        try:
            response = self.client.post(
                self.settings.google_token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.settings.google_client_id,
                    "client_secret": self.settings.google_client_secret,
                },
                timeout=30.0,
            )
        except httpx.HTTPError as exc:
            raise AuthFailure(f"Token refresh failed for {account.id}: {exc}") from exc

        if not response.is_success:
            raise AuthFailure(f"Token refresh failed for {account.id}: HTTP {response.status_code}")
        body = response.json()
        access_token = body.get("access_token")
        if not access_token:
            raise AuthFailure(f"Failed to obtain access token after refresh for {account.id}")

        expires_at = now + timedelta(seconds=int(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS))
        account.access_token = access_token
        account.expiry_date = expires_at
        self.db.add(account)
        self.db.commit()
        logger.info("token_refreshed", extra={"account_id": account.id, "expires_at": expires_at.isoformat()})
        return BearerCredential(access_token, expires_at)
