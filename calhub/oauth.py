"""Refresh-token exchange and token persistence for linked Google accounts.

The authorization-code/PKCE handshake lives outside this package; it hands the
first token pair to :func:`save_tokens`.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx

from calhub.errors import AuthExpiredError, ConfigIncompleteError, NetworkError
from calhub.models import GoogleConfig, OAuthTokens, utc_now
from calhub.secret_store import SecretStore, google_oauth_key

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        description = payload.get("error_description") or payload.get("error")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
    text = response.text.strip()
    return " ".join(text.split())[:200] if text else "no error payload"


async def refresh_access_token(
    http_client: httpx.AsyncClient,
    google: GoogleConfig,
    account_email: str,
    refresh_token: str,
    *,
    now: datetime | None = None,
) -> OAuthTokens:
    if not google.is_configured():
        raise ConfigIncompleteError(
            "Google OAuth client id/secret are not configured",
            missing=[name for name in ("client_id", "client_secret") if not getattr(google, name)],
        )
    if not refresh_token:
        raise AuthExpiredError(account_email, "No refresh token stored")

    try:
        response = await http_client.post(
            google.token_url,
            data={
                "client_id": google.client_id,
                "client_secret": google.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            headers={"Accept": "application/json"},
        )
    except httpx.TimeoutException as exc:
        raise NetworkError("Token refresh timed out", exc) from exc
    except httpx.HTTPError as exc:
        raise NetworkError("Token refresh request failed", exc) from exc

    if response.status_code < 200 or response.status_code >= 300:
        logger.info(
            "Token refresh rejected for %s (%s): %s",
            account_email,
            response.status_code,
            _safe_error_message(response),
        )
        raise AuthExpiredError(account_email, "Token refresh was rejected")

    try:
        payload = response.json()
    except ValueError as exc:
        raise AuthExpiredError(account_email, "Token endpoint returned invalid JSON") from exc

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token.strip():
        raise AuthExpiredError(account_email, "Token response is missing access_token")

    new_refresh_token = payload.get("refresh_token")
    if not isinstance(new_refresh_token, str) or not new_refresh_token.strip():
        new_refresh_token = refresh_token

    issued_at = now or utc_now()
    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    return OAuthTokens(
        access_token=access_token.strip(),
        refresh_token=new_refresh_token.strip(),
        expires_at=issued_at + timedelta(seconds=expires_in),
    )


async def load_tokens(secret_store: SecretStore, account_email: str) -> OAuthTokens | None:
    raw = await secret_store.get(google_oauth_key(account_email))
    if raw is None:
        return None
    try:
        return OAuthTokens.from_json(raw)
    except (json.JSONDecodeError, ValueError) as exc:
        raise AuthExpiredError(account_email, f"Stored tokens are unreadable ({exc})") from exc


async def save_tokens(secret_store: SecretStore, account_email: str, tokens: OAuthTokens) -> None:
    await secret_store.set(google_oauth_key(account_email), tokens.to_json())


async def delete_tokens(secret_store: SecretStore, account_email: str) -> None:
    await secret_store.delete(google_oauth_key(account_email))
