"""Integration API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field

from crm_sync.models import (
    AuthType,
    CustomerMatchStrategy,
    IntegrationStatus,
    RunState,
    SyncRunError,
    SyncRunStatus,
)


class ProviderInfo(BaseModel):
    """A supported provider."""
    id: str
    name: str
    description: str
    auth_type: AuthType
    features: List[str] = Field(default_factory=list)


class AvailableIntegrationsResponse(BaseModel):
    integrations: List[ProviderInfo]


class ConfiguredIntegration(BaseModel):
    """A configured integration; secrets are never returned."""
    provider: str
    name: str
    auth_type: AuthType
    status: IntegrationStatus
    status_message: Optional[str] = None
    sync_running: bool = False
    created_at: datetime
    updated_at: datetime
    last_synced_at: Optional[datetime] = None


class ConfiguredIntegrationsResponse(BaseModel):
    integrations: List[ConfiguredIntegration]


class SyncSettingsUpdate(BaseModel):
    """Partial sync settings update; unset fields keep their value."""
    model_config = ConfigDict(extra="forbid")

    sync_customers: Optional[bool] = None
    create_new_customers: Optional[bool] = None
    update_existing_customers: Optional[bool] = None
    sync_check_ins_as_jobs: Optional[bool] = None
    sync_photos: Optional[bool] = None
    customer_match_strategy: Optional[CustomerMatchStrategy] = None
    custom_field_mapping: Optional[Dict[str, str]] = None


class SyncSettingsResponse(BaseModel):
    provider: str
    sync_customers: bool
    create_new_customers: bool
    update_existing_customers: bool
    sync_check_ins_as_jobs: bool
    sync_photos: bool
    customer_match_strategy: CustomerMatchStrategy
    custom_field_mapping: Dict[str, str]
    updated_at: Optional[datetime] = None


class SyncSettingsUpdateResponse(BaseModel):
    ok: bool = True
    settings: SyncSettingsResponse


class ConfigureRequest(BaseModel):
    """Credentials are validated per provider by the vault."""
    provider: str
    credentials: Dict[str, Any]
    sync_settings: Optional[SyncSettingsUpdate] = None


class ConfigureResponse(BaseModel):
    ok: bool
    provider: str
    configured_at: datetime


class ConnectionTestRequest(BaseModel):
    """Omit credentials to test the stored ones."""
    provider: str
    credentials: Optional[Dict[str, Any]] = None


class ConnectionTestResponse(BaseModel):
    """Connection test response."""
    ok: bool
    message: str
    tested_at: datetime


class SyncTriggerResponse(BaseModel):
    accepted: bool
    run_id: str


class SyncCancelResponse(BaseModel):
    ok: bool = True
    cancelled: bool
    run_id: Optional[str] = None


class RequeueRequest(BaseModel):
    check_in_ids: List[str] = Field(..., min_length=1)


class RequeueResponse(BaseModel):
    ok: bool = True
    requeued: int


class SyncRunResponse(BaseModel):
    """A sync run as shown in history."""
    id: str
    provider: str
    state: RunState
    status: Optional[SyncRunStatus] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    items_processed: int
    items_skipped: int
    error_count: int
    errors: List[SyncRunError]
    preflight_failed: bool
    cancelled: bool


class SyncHistoryResponse(BaseModel):
    runs: List[SyncRunResponse]


class RemoveResponse(BaseModel):
    ok: bool = True
    removed: bool
