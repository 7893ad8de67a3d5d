"""Base provider adapter and error taxonomy."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, List
import logging

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from crm_sync.core.config import Settings, get_settings, PROVIDER_CONFIGS
from crm_sync.models import AuthType, CheckIn, CustomerIdentity, Photo
from crm_sync.utils.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Base adapter error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(IntegrationError):
    """Credentials rejected by the remote system."""
    pass


class ProviderValidationError(IntegrationError):
    """The remote system refused the payload."""
    pass


class InvalidItemError(IntegrationError):
    """Local record lacks the data needed to sync it."""
    pass


class TransientNetworkError(IntegrationError):
    """Timeout, connection failure or 5xx; safe to retry."""
    pass


class RateLimitError(TransientNetworkError):
    """Rate limit exceeded, locally or remotely."""
    pass


@dataclass
class ConnectionResult:
    """Outcome of a connectivity check."""
    ok: bool
    detail: str


@dataclass
class RemoteCustomer:
    """Customer record as returned by a provider search."""
    remote_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE"})


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: str = ""
    auth_type: AuthType

    def __init__(
        self,
        credentials,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        settings: Optional[Settings] = None,
    ):
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.config = PROVIDER_CONFIGS[self.provider]
        self.api_base_url = self.config["api_base_url"]
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds
        )
        self.rate_limiter = rate_limiter

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http_client.aclose()

    @property
    def display_name(self) -> str:
        return self.config["name"]

    # Authentication hooks

    @abstractmethod
    async def auth_headers(self) -> Dict[str, str]:
        """Headers that authenticate one request."""
        pass

    async def handle_unauthorized(self) -> bool:
        """React to a 401. Return True if the request should be replayed once."""
        return False

    @abstractmethod
    def rate_limit_key(self) -> str:
        """Key identifying the remote account for rate limiting."""
        pass

    # Capability set

    @abstractmethod
    async def probe(self) -> None:
        """Cheapest authenticated call; raises on failure."""
        pass

    @abstractmethod
    async def search_customers(self, field: str, value: str) -> List[RemoteCustomer]:
        """Search remote customers by ``email``, ``phone`` or ``name``."""
        pass

    @abstractmethod
    async def upsert_customer(
        self,
        identity: CustomerIdentity,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create a customer, or update ``remote_id``. Returns the remote id."""
        pass

    @abstractmethod
    async def push_check_in(
        self,
        check_in: CheckIn,
        customer_id: str,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create a job for a check-in, or update ``remote_id``. Returns the remote id."""
        pass

    @abstractmethod
    async def attach_photos(self, remote_job_id: str, photos: List[Photo]) -> None:
        """Attach check-in photos to a remote job."""
        pass

    async def test_connection(self) -> ConnectionResult:
        """Check connectivity. Never raises."""
        try:
            await self.probe()
            return ConnectionResult(ok=True, detail=f"Connected to {self.display_name}")
        except IntegrationError as e:
            logger.warning(
                f"Connection test failed for {self.provider}: {e}",
                extra={"provider": self.provider},
            )
            return ConnectionResult(ok=False, detail=f"Connection Failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected connection test failure for {self.provider}: {e}")
            return ConnectionResult(ok=False, detail=f"Connection test failed: {e}")

    # Common utility methods

    def url(self, path: str) -> str:
        return f"{self.api_base_url}{path}"

    def retrying(self, attempts: Optional[int] = None) -> AsyncRetrying:
        """Bounded retry policy for transient errors only."""
        return AsyncRetrying(
            stop=stop_after_attempt(attempts or self.settings.provider_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.provider_retry_backoff_seconds,
                max=10,
            ),
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        )

    async def make_api_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        idempotent: Optional[bool] = None,
    ) -> httpx.Response:
        """Make an API request with rate limiting and retries.

        Non-idempotent requests (POST by default) are sent exactly once; the
        caller decides whether a create may be repeated.
        """
        if idempotent is None:
            idempotent = method.upper() in IDEMPOTENT_METHODS
        attempts = self.settings.provider_max_attempts if idempotent else 1

        async for attempt in self.retrying(attempts):
            with attempt:
                return await self._send(method, self.url(path), params=params, json=json)

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        await self._check_rate_limit()

        response = await self._dispatch(method, url, params=params, json=json)
        if response.status_code == 401 and await self.handle_unauthorized():
            response = await self._dispatch(method, url, params=params, json=json)

        self.raise_for_status(response)
        return response

    async def _dispatch(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        headers.update(await self.auth_headers())
        try:
            return await self.http_client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{self.display_name} request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{self.display_name} is unreachable: {e}") from e

    async def _check_rate_limit(self) -> None:
        if not self.rate_limiter or not self.settings.rate_limit_enabled:
            return
        limits = self.config.get("rate_limit", {})
        allowed = await self.rate_limiter.check_rate_limit(
            self.rate_limit_key(),
            limit=limits.get("calls", 100),
            window=limits.get("window", 60),
        )
        if not allowed:
            raise RateLimitError(f"Rate limit exceeded for {self.display_name}")

    def raise_for_status(self, response: httpx.Response) -> None:
        """Translate an HTTP error status into the adapter error taxonomy."""
        if response.is_success:
            return

        status = response.status_code
        message = f"{self.display_name}: {self.error_message(response)}"
        if status in (401, 403):
            raise AuthenticationError(message, status_code=status)
        if status == 429:
            raise RateLimitError(message, status_code=status)
        if status >= 500:
            raise TransientNetworkError(message, status_code=status)
        raise ProviderValidationError(message, status_code=status)

    @staticmethod
    def error_message(response: httpx.Response) -> str:
        """Best-effort human readable message from an error response."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            for key in ("message", "error_description", "error", "title", "detail"):
                if isinstance(body.get(key), str) and body[key]:
                    return body[key]

        text = response.text.strip()
        return text[:200] if text else f"HTTP {response.status_code}"

    def parse_json(self, response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON object body; anything else is a provider error."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise ProviderValidationError(
                f"{self.display_name} returned an unreadable response",
                status_code=response.status_code,
            )
        return body

    def parse_records(self, response: httpx.Response, key: str) -> List[Dict[str, Any]]:
        """The list of records under ``key`` in a search response."""
        records = self.parse_json(response).get(key) or []
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise ProviderValidationError(
                f"{self.display_name} returned malformed {key}",
                status_code=response.status_code,
            )
        return records

    def record_id(self, record: Dict[str, Any]) -> str:
        if record.get("id") in (None, ""):
            raise ProviderValidationError(f"{self.display_name} returned a record without an id")
        return str(record["id"])

    def extract_id(self, response: httpx.Response) -> str:
        """Read the created record id from a response body."""
        return self.record_id(self.parse_json(response))
