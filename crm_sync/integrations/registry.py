"""Provider registry and adapter factory."""

from typing import Any, Dict, List, Optional, Type

import httpx

from crm_sync.core.config import Settings, get_settings, PROVIDER_CONFIGS
from crm_sync.core.exceptions import UnsupportedProviderError, ValidationError
from crm_sync.integrations.base import BaseProviderAdapter
from crm_sync.integrations.oauth2 import OAuth2Adapter, TokenCache
from crm_sync.models import AuthType
from crm_sync.utils.rate_limiter import RateLimiter


class ProviderRegistry:
    """Registry for provider adapter implementations."""

    _adapters: Dict[str, Type[BaseProviderAdapter]] = {}

    @classmethod
    def register(cls, provider: str):
        """Decorator to register an adapter class."""
        def decorator(adapter_class: Type[BaseProviderAdapter]):
            cls._adapters[provider] = adapter_class
            return adapter_class
        return decorator

    @classmethod
    def get(cls, provider: str) -> Optional[Type[BaseProviderAdapter]]:
        """Get adapter class by provider key."""
        return cls._adapters.get(provider)

    @classmethod
    def require(cls, provider: str) -> Type[BaseProviderAdapter]:
        adapter_class = cls.get(provider)
        if adapter_class is None:
            raise UnsupportedProviderError(provider)
        return adapter_class

    @classmethod
    def list_providers(cls) -> List[str]:
        """List all registered provider keys."""
        return list(cls._adapters.keys())

    @classmethod
    def auth_type_for(cls, provider: str) -> AuthType:
        return cls.require(provider).auth_type

    @classmethod
    def catalog(cls) -> List[Dict[str, Any]]:
        """Public description of every supported provider."""
        entries = []
        for provider in cls.list_providers():
            config = PROVIDER_CONFIGS[provider]
            entries.append({
                "id": provider,
                "name": config["name"],
                "description": config["description"],
                "auth_type": AuthType(config["auth_type"]).value,
                "features": list(config.get("features", [])),
            })
        return entries


class AdapterFactory:
    """Builds adapters with shared token cache, rate limiter and transport."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        token_cache: Optional[TokenCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.token_cache = token_cache or TokenCache()
        self.rate_limiter = rate_limiter
        self.transport = transport

    def create(self, provider: str, credentials) -> BaseProviderAdapter:
        adapter_class = ProviderRegistry.require(provider)
        if AuthType(credentials.auth_type) != adapter_class.auth_type:
            raise ValidationError(
                f"{provider} expects {adapter_class.auth_type.value} credentials"
            )

        http_client = httpx.AsyncClient(
            timeout=self.settings.provider_timeout_seconds,
            transport=self.transport,
        )
        kwargs: Dict[str, Any] = {
            "http_client": http_client,
            "rate_limiter": self.rate_limiter,
            "settings": self.settings,
        }
        if issubclass(adapter_class, OAuth2Adapter):
            kwargs["token_cache"] = self.token_cache
        return adapter_class(credentials, **kwargs)
