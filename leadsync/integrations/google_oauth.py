from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import httpx

from ..storage.memory import CredentialStore
from ..storage.models import CredentialRecord
from .config import GoogleCalendarConfig
from .errors import NoConnectionError, UpstreamError

logger = logging.getLogger(__name__)

TokenFetcher = Callable[[GoogleCalendarConfig, dict[str, Any]], Awaitable[dict[str, Any]]]
Clock = Callable[[], datetime]


@dataclass(slots=True)
class TokenGrant:
    """Parsed response of the provider's token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints for the consent handshake and refreshes."""

    def __init__(
        self,
        config: GoogleCalendarConfig,
        *,
        token_fetcher: TokenFetcher | None = None,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._token_fetcher = token_fetcher or _default_token_fetcher
        self._clock = clock or _utcnow
        self._logger = logger_instance or logger

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.config.auth_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        return await self._request_token(payload, action="exchange authorization code")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        return await self._request_token(payload, action="refresh access token")

    async def _request_token(self, payload: dict[str, Any], *, action: str) -> TokenGrant:
        try:
            token_payload = await self._token_fetcher(self.config, payload)
        except UpstreamError:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning("Failed to %s: %s", action, type(exc).__name__)
            raise UpstreamError(f"Failed to {action}") from exc
        return _parse_token_response(token_payload, now=self._clock())


class TokenRefresher:
    """Hands out a currently-valid credential, refreshing and persisting it when stale."""

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        *,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth_client
        self._clock = clock or _utcnow
        self._logger = logger_instance or logger

    async def obtain_valid_credential(self, user_id: str) -> CredentialRecord:
        record = await self._store.get_credential(user_id)
        if record is None:
            raise NoConnectionError(user_id)

        if not record.needs_refresh(now=self._clock()):
            return record

        if not record.refresh_token:
            # Nothing to refresh with; the remote call will surface the auth failure.
            self._logger.debug("Credential for %s is stale and has no refresh token", user_id)
            return record

        grant = await self._oauth.refresh(record.refresh_token)
        refreshed = await self._store.upsert_credential(
            user_id,
            access_token=grant.access_token,
            expires_at=grant.expires_at,
        )
        self._logger.debug("Refreshed access token for %s expiring at %s", user_id, grant.expires_at)
        return refreshed

    async def complete_authorization(self, user_id: str, code: str) -> CredentialRecord:
        """Exchange an authorization code and persist the resulting credential."""

        grant = await self._oauth.exchange_code(code)
        record = await self._store.upsert_credential(
            user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        if grant.refresh_token is None:
            self._logger.warning("Google did not return a refresh token for %s", user_id)
        self._logger.info("Stored Google Calendar credential for %s", user_id)
        return record


class ConnectionStatusService:
    """Reports and tears down a user's calendar connection."""

    def __init__(self, store: CredentialStore, *, logger_instance: logging.Logger | None = None) -> None:
        self._store = store
        self._logger = logger_instance or logger

    async def is_connected(self, user_id: str) -> bool:
        return await self._store.get_credential(user_id) is not None

    async def disconnect(self, user_id: str) -> None:
        await self._store.delete_credential(user_id)
        self._logger.info("Disconnected Google Calendar for %s", user_id)


def _parse_token_response(payload: dict[str, Any], *, now: datetime) -> TokenGrant:
    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token.strip():
        raise UpstreamError("Token response did not contain an access token")
    expires_at: datetime | None = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        expires_at = now + timedelta(seconds=float(expires_in))
    return TokenGrant(
        access_token=access_token.strip(),
        refresh_token=payload.get("refresh_token") or None,
        expires_at=expires_at,
        scope=payload.get("scope"),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _default_token_fetcher(config: GoogleCalendarConfig, payload: dict[str, Any]) -> dict[str, Any]:  # pragma: no cover - network
    async with httpx.AsyncClient(timeout=config.request_timeout) as client:
        response = await client.post(
            config.token_endpoint,
            data=payload,
            headers={"Accept": "application/json"},
        )
    if response.status_code < 200 or response.status_code >= 300:
        raise UpstreamError(summarize_error_response(response), status_code=response.status_code)
    return response.json()


def summarize_error_response(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"
