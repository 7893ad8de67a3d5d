"""Provider adapter implementations."""

from .base import (
    BaseProviderAdapter,
    ConnectionResult,
    RemoteCustomer,
    IntegrationError,
    AuthenticationError,
    ProviderValidationError,
    InvalidItemError,
    TransientNetworkError,
    RateLimitError,
)
from .oauth2 import OAuth2Adapter, TokenCache, CachedToken
from .api_key import ApiKeyAdapter
from .registry import ProviderRegistry, AdapterFactory
from .servicetitan import ServiceTitanAdapter
from .housecallpro import HousecallProAdapter

__all__ = [
    "BaseProviderAdapter",
    "ConnectionResult",
    "RemoteCustomer",
    "IntegrationError",
    "AuthenticationError",
    "ProviderValidationError",
    "InvalidItemError",
    "TransientNetworkError",
    "RateLimitError",
    "OAuth2Adapter",
    "TokenCache",
    "CachedToken",
    "ApiKeyAdapter",
    "ProviderRegistry",
    "AdapterFactory",
    "ServiceTitanAdapter",
    "HousecallProAdapter",
]
