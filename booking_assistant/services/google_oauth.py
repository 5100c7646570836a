"""Google OAuth credential provider for the host calendar.

This module refreshes Google access tokens from a long-lived refresh token.
The refresh token comes from the environment or, for local setups, from the
tokens file written by the OAuth callback route.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import json
import logging
import os
import time

import httpx

from booking_assistant.config.settings import GOOGLE_TOKEN_URL, google_tokens_file


logger = logging.getLogger("booking.google_oauth")

_cached_access_token: Optional[str] = None
_cached_access_token_expires_at: float = 0.0


def _stored_refresh_token() -> Optional[str]:
    path = Path(google_tokens_file())
    try:
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError) as exc:
        logger.warning("Could not read Google tokens file %s: %r", path, exc)
        return None
    token = data.get("refresh_token") if isinstance(data, dict) else None
    return token or None


def get_refresh_token() -> Optional[str]:
    return os.getenv("GOOGLE_REFRESH_TOKEN") or _stored_refresh_token()


def save_refresh_token(refresh_token: str) -> Path:
    """Persist the refresh token returned by the OAuth callback."""
    path = Path(google_tokens_file())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"refresh_token": refresh_token}, indent=2), encoding="utf-8")
    logger.info("Google refresh token saved to %s", path)
    return path


def clear_cached_token() -> None:
    global _cached_access_token, _cached_access_token_expires_at
    _cached_access_token = None
    _cached_access_token_expires_at = 0.0


async def get_google_access_token(force_refresh: bool = False) -> Optional[str]:
    """Return a Google OAuth access token, or None if no credential is available.

    Prefers an explicit GOOGLE_ACCESS_TOKEN env var if present; otherwise it
    uses the refresh-token flow with GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.

    Args:
        force_refresh: If True, ignores the cached token and fetches a new one.
    """

    explicit = os.getenv("GOOGLE_ACCESS_TOKEN")
    if explicit:
        return explicit

    global _cached_access_token, _cached_access_token_expires_at

    if not force_refresh and _cached_access_token and time.time() < _cached_access_token_expires_at:
        return _cached_access_token

    if force_refresh:
        clear_cached_token()
        logger.info("Forcing token refresh...")

    client_id = os.getenv("GOOGLE_CLIENT_ID")
    client_secret = os.getenv("GOOGLE_CLIENT_SECRET")
    refresh_token = get_refresh_token()

    if not client_id or not client_secret or not refresh_token:
        logger.error(
            "Missing GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET / refresh token; "
            "cannot refresh Google access token.",
        )
        return None

    data = {
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }

    try:
        async with httpx.AsyncClient(timeout=20.0) as client:
            last_exc: Exception | None = None
            for _attempt in range(2):
                try:
                    resp = await client.post(GOOGLE_TOKEN_URL, data=data)
                    resp.raise_for_status()
                    break
                except httpx.RequestError as exc:
                    last_exc = exc
                    logger.warning("Transient error refreshing Google access token: %r", exc)
                except httpx.HTTPStatusError as exc:
                    logger.error(
                        "Google token endpoint returned %s: %s",
                        exc.response.status_code,
                        exc.response.text,
                    )
                    return None
            else:
                logger.error("Error refreshing Google access token after retries: %r", last_exc)
                return None
    except Exception as exc:  # noqa: BLE001
        logger.error("Unexpected error refreshing Google access token: %r", exc)
        return None

    payload = resp.json()
    token = payload.get("access_token")
    if not token:
        logger.error("Token endpoint response missing access_token: %r", payload)
        return None

    expires_in = payload.get("expires_in")
    try:
        expires_in_int = int(expires_in) if expires_in is not None else 3600
    except (TypeError, ValueError):
        expires_in_int = 3600

    _cached_access_token = token
    _cached_access_token_expires_at = time.time() + max(0, expires_in_int - 60)

    return token


async def exchange_authorization_code(code: str, redirect_uri: str) -> dict:
    """Exchange an OAuth authorization code for tokens."""
    data = {
        "code": code,
        "client_id": os.getenv("GOOGLE_CLIENT_ID", ""),
        "client_secret": os.getenv("GOOGLE_CLIENT_SECRET", ""),
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    async with httpx.AsyncClient(timeout=20.0) as client:
        resp = await client.post(GOOGLE_TOKEN_URL, data=data)
    resp.raise_for_status()
    return resp.json() or {}
