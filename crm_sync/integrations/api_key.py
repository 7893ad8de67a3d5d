"""Static API key adapter."""

from typing import Dict

from crm_sync.integrations.base import BaseProviderAdapter
from crm_sync.models import AuthType, ApiKeyConfig
from crm_sync.utils.crypto import fingerprint


class ApiKeyAdapter(BaseProviderAdapter):
    """Adapter that sends a static key with every call."""

    auth_type = AuthType.API_KEY
    header_name = "Authorization"
    scheme = "Bearer"

    def __init__(self, credentials: ApiKeyConfig, *args, **kwargs):
        super().__init__(credentials, *args, **kwargs)
        self.key_fingerprint = fingerprint(self.provider, credentials.api_key)

    def rate_limit_key(self) -> str:
        return f"{self.provider}:{self.key_fingerprint[:16]}"

    async def auth_headers(self) -> Dict[str, str]:
        key = self.credentials.api_key
        return {self.header_name: f"{self.scheme} {key}" if self.scheme else key}
