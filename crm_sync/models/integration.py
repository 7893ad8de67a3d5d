"""Integration models."""

from datetime import datetime
from typing import Annotated, Optional, Dict, Union, Literal
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class AuthType(str, Enum):
    """Authentication models supported by providers."""
    OAUTH2 = "oauth2"
    API_KEY = "api_key"


class IntegrationStatus(str, Enum):
    """Integration state shown in the configured integrations list."""
    ACTIVE = "active"
    ERROR = "error"
    INACTIVE = "inactive"


class CustomerMatchStrategy(str, Enum):
    """How a local customer identity is reconciled against remote customers."""
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    ALL = "all"


NonBlank = Annotated[str, Field(min_length=1)]


class OAuth2Config(BaseModel):
    """Client-credentials configuration for OAuth2 providers."""
    model_config = ConfigDict(str_strip_whitespace=True)

    auth_type: Literal["oauth2"] = "oauth2"
    client_id: NonBlank
    client_secret: NonBlank
    tenant_id: NonBlank


class ApiKeyConfig(BaseModel):
    """Static API key configuration."""
    model_config = ConfigDict(str_strip_whitespace=True)

    auth_type: Literal["api_key"] = "api_key"
    api_key: NonBlank


ProviderCredentials = Annotated[
    Union[OAuth2Config, ApiKeyConfig],
    Field(discriminator="auth_type"),
]


class IntegrationState(BaseModel):
    """Public view of a configured integration; never carries the secret."""
    model_config = ConfigDict(use_enum_values=True)

    company_id: str
    provider: str
    auth_type: AuthType
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Integration state
    status: IntegrationStatus = IntegrationStatus.INACTIVE
    status_message: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class StoredCredential(IntegrationState):
    """Credential record as persisted; the secret stays encrypted."""

    secret_blob: str


class SyncSettings(BaseModel):
    """Per-company, per-provider sync settings."""
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    company_id: str
    provider: str
    sync_customers: bool = True
    create_new_customers: bool = True
    update_existing_customers: bool = True
    sync_check_ins_as_jobs: bool = True
    sync_photos: bool = True
    customer_match_strategy: CustomerMatchStrategy = CustomerMatchStrategy.ALL
    # check-in metadata key -> CRM custom field name
    custom_field_mapping: Dict[str, str] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None
