"""OAuth access-token cache shared by every caller of one external system.

One TokenCache instance exists per external system (Zoho, QuickBooks) and is
injected into the connectors that need it. The cache holds a single
credential with an absolute expiry and refreshes it on demand through an
injected TokenExchange.

Refresh rules:
- A cached token is served while ``now < expires_at - buffer`` (5 minutes by
  default), with no network call.
- Refreshes are serialized by an asyncio.Lock; callers that waited on the
  lock re-check the cache before exchanging again.
- A failed refresh clears the cache, then falls back to the static token if
  one is configured (logged), otherwise raises AuthError.
- clear() forces the next get_token() to refresh, e.g. after a 401.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal, Protocol

import httpx
import structlog

from src.synchub.core.errors import AuthError

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRY_BUFFER_SECONDS = 300.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class CachedToken:
    """Access token plus the absolute instant (epoch seconds) it expires."""

    access_token: str
    expires_at: float


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful token exchange."""

    access_token: str
    expires_in: int = DEFAULT_TOKEN_LIFETIME_SECONDS


class TokenExchange(Protocol):
    """Exchanges refresh material for a fresh access token."""

    async def exchange(self) -> TokenGrant:
        """Return a new grant or raise AuthError."""
        ...


# ── OAuth Refresh Exchange ─────────────────────────────────────────────────


class OAuthRefreshExchange:
    """refresh_token grant against an OAuth2 token endpoint via httpx.

    Args:
        token_url: Token endpoint URL.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        refresh_token: Long-lived refresh token.
        client_auth: ``"form"`` sends the client credentials in the form body
            (Zoho); ``"basic"`` sends them as HTTP Basic auth (Intuit).
        http_client: Optional shared AsyncClient (tests inject a MockTransport).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        *,
        client_auth: Literal["form", "basic"] = "form",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._client_auth = client_auth
        self._http_client = http_client
        self._timeout = timeout

    @property
    def refresh_token(self) -> str:
        """Current refresh token (Intuit rotates it on every exchange)."""
        return self._refresh_token

    async def exchange(self) -> TokenGrant:
        data = {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
        auth: httpx.BasicAuth | None = None
        if self._client_auth == "basic":
            auth = httpx.BasicAuth(self._client_id, self._client_secret)
        else:
            data["client_id"] = self._client_id
            data["client_secret"] = self._client_secret

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self._token_url, data=data, auth=auth, headers={"Accept": "application/json"}
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        self._token_url, data=data, auth=auth, headers={"Accept": "application/json"}
                    )
        except httpx.HTTPError as exc:
            raise AuthError(f"Token exchange request failed: {exc}") from exc

        if response.status_code >= 400:
            raise AuthError(
                f"Token exchange failed ({response.status_code}): {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthError(f"Token endpoint returned invalid JSON: {response.text[:200]}") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            error = body.get("error") if isinstance(body, dict) else None
            raise AuthError(f"No access_token in token response: {error or body}")

        rotated = body.get("refresh_token")
        if rotated and rotated != self._refresh_token:
            self._refresh_token = rotated
            logger.info("token_exchange.refresh_token_rotated", token_url=self._token_url)

        try:
            expires_in = int(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        return TokenGrant(access_token=access_token, expires_in=expires_in)


# ── Token Cache ────────────────────────────────────────────────────────────


class TokenCache:
    """Single-slot access-token cache for one external system.

    Args:
        name: System name used in log events (e.g. "zoho").
        exchange: Refresh-material exchange, or None when only a static
            token is configured.
        static_token: Fallback credential returned when no exchange is
            configured or the exchange fails.
        buffer_seconds: Safety margin before expiry at which a token is
            treated as stale.
        clock: Returns the current epoch time in seconds (injectable for tests).
    """

    def __init__(
        self,
        name: str,
        exchange: TokenExchange | None = None,
        *,
        static_token: str | None = None,
        buffer_seconds: float = DEFAULT_EXPIRY_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._name = name
        self._exchange = exchange
        self._static_token = static_token or None
        self._buffer = buffer_seconds
        self._clock = clock
        self._cached: CachedToken | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> CachedToken | None:
        return self._cached

    def _fresh(self) -> str | None:
        cached = self._cached
        if cached is not None and self._clock() < cached.expires_at - self._buffer:
            return cached.access_token
        return None

    async def get_token(self) -> str:
        """Return a usable access token, refreshing it if needed.

        Raises:
            AuthError: If neither refresh material nor a static token yields
                a credential.
        """
        token = self._fresh()
        if token is not None:
            return token

        if self._exchange is None:
            if self._static_token:
                return self._static_token
            raise AuthError(f"No authentication method available for {self._name}")

        async with self._lock:
            token = self._fresh()
            if token is not None:
                return token

            try:
                grant = await self._exchange.exchange()
            except AuthError as exc:
                self._cached = None
                if self._static_token:
                    logger.warning(
                        "token_cache.static_fallback",
                        system=self._name,
                        error=str(exc),
                    )
                    return self._static_token
                logger.error("token_cache.refresh_failed", system=self._name, error=str(exc))
                raise

            self._cached = CachedToken(
                access_token=grant.access_token,
                expires_at=self._clock() + grant.expires_in,
            )
            logger.info(
                "token_cache.refreshed",
                system=self._name,
                expires_in=grant.expires_in,
            )
            return grant.access_token

    def clear(self) -> None:
        """Drop the cached token so the next call refreshes."""
        self._cached = None
        logger.debug("token_cache.cleared", system=self._name)
