"""Bearer credentials for the completion endpoint: OAuth refresh-token grant with a JWT account id."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Any, Callable

import httpx

from chatbridge.core.errors import CredentialError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_ENDPOINT = "https://auth.openai.com/oauth/token"
DEFAULT_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
REFRESH_EXPIRY_SKEW = 30.0
AUTH_CLAIM = "https://api.openai.com/auth"


def parse_json(raw: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def parse_jwt_claims(token: Any) -> dict[str, Any] | None:
    """Decode the (unverified) claims segment of a JWT. None when the token is not a JWT."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError):
        return None
    return claims if isinstance(claims, dict) else None


def account_id_from_claims(claims: dict[str, Any] | None) -> str | None:
    if not claims:
        return None
    if claims.get("chatgpt_account_id"):
        return claims["chatgpt_account_id"]
    embedded = claims.get(AUTH_CLAIM)
    if isinstance(embedded, dict) and embedded.get("chatgpt_account_id"):
        return embedded["chatgpt_account_id"]
    orgs = claims.get("organizations")
    if isinstance(orgs, list) and orgs and isinstance(orgs[0], dict) and orgs[0].get("id"):
        return orgs[0]["id"]
    return None


def account_id_from_tokens(tokens: dict[str, Any]) -> str | None:
    return account_id_from_claims(parse_jwt_claims(tokens.get("id_token"))) or account_id_from_claims(
        parse_jwt_claims(tokens.get("access_token"))
    )


def extract_error_detail(raw: str, payload: Any) -> str:
    """Most specific error message from an error body; falls back to the raw text."""
    if isinstance(payload, dict):
        detail = payload.get("detail")
        if isinstance(detail, dict) and (detail.get("message") or detail.get("code")):
            return str(detail.get("message") or detail.get("code"))
        if payload.get("error_description"):
            return str(payload["error_description"])
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
    return raw or "unknown_error"


class CodexCredentials:
    """Access token + account id, refreshed from a refresh token. Concurrent refreshes share one request."""

    def __init__(
        self,
        refresh_token: str,
        *,
        refresh_endpoint: str = DEFAULT_REFRESH_ENDPOINT,
        client_id: str = DEFAULT_CLIENT_ID,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not refresh_token or not refresh_token.strip():
            raise CredentialError("CODEX_REFRESH_TOKEN is required")
        self.refresh_token = refresh_token.strip()
        self.access_token: str | None = None
        self.account_id: str | None = None
        self.expires_at: float | None = None
        self._refresh_endpoint = refresh_endpoint
        self._client_id = client_id
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._inflight: asyncio.Future[None] | None = None

    def needs_refresh(self) -> bool:
        if not self.access_token:
            return True
        return self.expires_at is not None and self._clock() >= self.expires_at

    async def ensure_fresh(self) -> None:
        if self.needs_refresh():
            await self.refresh()

    async def refresh(self) -> None:
        if self._inflight is not None:
            await asyncio.shield(self._inflight)
            return
        loop = asyncio.get_running_loop()
        self._inflight = loop.create_future()
        try:
            await self._refresh()
        except BaseException as e:
            self._inflight.set_exception(e)
            # Mark retrieved: waiters (if any) got it, the caller re-raises below
            self._inflight.exception()
            raise
        else:
            self._inflight.set_result(None)
        finally:
            self._inflight = None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            raise CredentialError("access token is unavailable; token refresh may have failed")
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self.account_id:
            headers["ChatGPT-Account-Id"] = self.account_id
        return headers

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
            self._owns_client = True
        return self._client

    async def _refresh(self) -> None:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self._client_id,
        }
        try:
            r = await self._http().post(self._refresh_endpoint, data=form)
        except httpx.HTTPError as e:
            raise CredentialError(f"token refresh failed: {e}") from e
        raw = r.text
        payload = parse_json(raw)
        if not r.is_success:
            raise CredentialError(f"token refresh failed: {extract_error_detail(raw, payload)}")
        if not isinstance(payload, dict):
            payload = {}
        access_token = payload.get("access_token")
        access_token = access_token.strip() if isinstance(access_token, str) else ""
        if not access_token:
            raise CredentialError("token refresh failed: access_token missing in refresh response")
        next_refresh = payload.get("refresh_token")
        if isinstance(next_refresh, str) and next_refresh.strip():
            self.refresh_token = next_refresh.strip()
        self.access_token = access_token
        self.account_id = account_id_from_tokens(payload) or self.account_id
        try:
            expires_in = float(payload.get("expires_in"))
        except (TypeError, ValueError):
            expires_in = 0.0
        self.expires_at = (
            self._clock() + expires_in - REFRESH_EXPIRY_SKEW if expires_in > 0 else None
        )
        logger.info(
            "access token refreshed",
            extra={"has_account_id": bool(self.account_id), "expires_in": expires_in or None},
        )
