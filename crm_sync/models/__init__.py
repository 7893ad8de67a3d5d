"""Data models for the CRM sync service."""

from .integration import (
    AuthType,
    IntegrationStatus,
    CustomerMatchStrategy,
    OAuth2Config,
    ApiKeyConfig,
    ProviderCredentials,
    IntegrationState,
    StoredCredential,
    SyncSettings,
)
from .sync import (
    RunState,
    SyncRunStatus,
    LocalEntityType,
    SyncRunError,
    SyncRun,
    RunAlreadyFinalizedError,
    RemoteMapping,
)
from .check_in import CheckIn, CustomerIdentity, Location, Photo

__all__ = [
    "AuthType",
    "IntegrationStatus",
    "CustomerMatchStrategy",
    "OAuth2Config",
    "ApiKeyConfig",
    "ProviderCredentials",
    "IntegrationState",
    "StoredCredential",
    "SyncSettings",
    "RunState",
    "SyncRunStatus",
    "LocalEntityType",
    "SyncRunError",
    "SyncRun",
    "RunAlreadyFinalizedError",
    "RemoteMapping",
    "CheckIn",
    "CustomerIdentity",
    "Location",
    "Photo",
]
