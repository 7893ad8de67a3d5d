"""OAuth2 client-credentials adapter and in-memory token cache."""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging
import time

import httpx

from crm_sync.integrations.base import (
    BaseProviderAdapter,
    AuthenticationError,
    TransientNetworkError,
)
from crm_sync.models import AuthType, OAuth2Config
from crm_sync.utils.crypto import fingerprint

logger = logging.getLogger(__name__)


@dataclass
class CachedToken:
    """Access token with its absolute expiry on the cache clock."""
    access_token: str
    token_type: str
    expires_at: float


class TokenCache:
    """Access tokens keyed by credential fingerprint.

    One lock per fingerprint serializes token exchanges, so concurrent runs
    sharing a credential set perform a single exchange.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def now(self) -> float:
        return self._clock()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def peek(self, key: str) -> Optional[CachedToken]:
        """Return the cached token if it has not expired."""
        token = self._tokens.get(key)
        if token and self.now() < token.expires_at:
            return token
        return None

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[CachedToken]],
    ) -> CachedToken:
        token = self.peek(key)
        if token:
            return token

        async with self._lock_for(key):
            # Another task may have refreshed while we waited
            token = self.peek(key)
            if token:
                return token
            token = await fetch()
            self._tokens[key] = token
            return token

    def invalidate(self, key: str, stale: Optional[CachedToken] = None) -> None:
        """Drop a token. With ``stale``, only drop it if it is still the cached one."""
        current = self._tokens.get(key)
        if current is None:
            return
        if stale is None or current is stale:
            del self._tokens[key]

    def clear(self) -> None:
        self._tokens.clear()


class OAuth2Adapter(BaseProviderAdapter):
    """Adapter for providers using the OAuth2 client-credentials grant."""

    auth_type = AuthType.OAUTH2

    def __init__(self, credentials: OAuth2Config, *args, token_cache: Optional[TokenCache] = None, **kwargs):
        super().__init__(credentials, *args, **kwargs)
        self.token_cache = token_cache or TokenCache()
        self.token_url = self.config["token_url"]
        self.token_key = fingerprint(
            self.provider,
            credentials.client_id,
            credentials.client_secret,
            credentials.tenant_id,
        )
        self._last_token: Optional[CachedToken] = None

    def rate_limit_key(self) -> str:
        return f"{self.provider}:{self.token_key[:16]}"

    def extra_headers(self) -> Dict[str, str]:
        """Provider specific headers sent with every API call."""
        return {}

    async def auth_headers(self) -> Dict[str, str]:
        token = await self.token_cache.get_or_fetch(self.token_key, self.exchange_client_credentials)
        self._last_token = token
        headers = {"Authorization": f"{token.token_type} {token.access_token}"}
        headers.update(self.extra_headers())
        return headers

    async def handle_unauthorized(self) -> bool:
        """Discard the rejected token so the replay exchanges a new one."""
        logger.info(f"Access token rejected by {self.provider}, refreshing")
        self.token_cache.invalidate(self.token_key, stale=self._last_token)
        return True

    async def exchange_client_credentials(self) -> CachedToken:
        """Exchange client credentials for a bearer token."""
        data = {
            "grant_type": "client_credentials",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
        }
        if self.config.get("scope"):
            data["scope"] = self.config["scope"]

        try:
            response = await self.http_client.post(
                self.token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{self.display_name} token exchange timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{self.display_name} token endpoint unreachable: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientNetworkError(
                f"Token exchange failed: {self.error_message(response)}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise AuthenticationError(
                f"Token exchange failed: {self.error_message(response)}",
                status_code=response.status_code,
            )

        token_data = self.parse_json(response)
        access_token = token_data.get("access_token")
        if not access_token:
            raise AuthenticationError("Token exchange failed: no access token in response")

        expires_in = int(token_data.get("expires_in") or self.settings.default_token_ttl_seconds)
        ttl = max(0, expires_in - self.settings.token_expiry_skew_seconds)
        token_type = token_data.get("token_type") or "Bearer"
        if token_type.lower() == "bearer":
            token_type = "Bearer"

        logger.info(
            f"Obtained {self.provider} access token",
            extra={"provider": self.provider, "expires_in": expires_in},
        )
        return CachedToken(
            access_token=access_token,
            token_type=token_type,
            expires_at=self.token_cache.now() + ttl,
        )
