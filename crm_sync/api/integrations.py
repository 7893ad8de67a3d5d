"""Integration management API endpoints."""

from fastapi import APIRouter, HTTPException, status, Depends, Query
from typing import Optional
from datetime import datetime
import logging

from crm_sync.core.exceptions import (
    ServiceError,
    ValidationError,
    UnsupportedProviderError,
    NotConfiguredError,
    ConflictError,
    CredentialsUnreadableError,
    RunNotFoundError,
)
from crm_sync.models import SyncRun, SyncSettings
from crm_sync.schemas.integration import (
    AvailableIntegrationsResponse,
    ConfiguredIntegrationsResponse,
    ConfigureRequest,
    ConfigureResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
    SyncSettingsUpdate,
    SyncSettingsResponse,
    SyncSettingsUpdateResponse,
    SyncTriggerResponse,
    SyncCancelResponse,
    RequeueRequest,
    RequeueResponse,
    SyncRunResponse,
    SyncHistoryResponse,
    RemoveResponse,
)
from crm_sync.services import IntegrationService
from crm_sync.api.dependencies import get_company_id, get_integration_service

logger = logging.getLogger(__name__)
router = APIRouter()

_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    UnsupportedProviderError: status.HTTP_400_BAD_REQUEST,
    NotConfiguredError: status.HTTP_404_NOT_FOUND,
    RunNotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    CredentialsUnreadableError: status.HTTP_409_CONFLICT,
}


def http_error(error: ServiceError) -> HTTPException:
    """Map a service error onto its HTTP status."""
    status_code = _STATUS_CODES.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=str(error))


def run_response(run: SyncRun) -> SyncRunResponse:
    return SyncRunResponse(**run.model_dump())


def settings_response(settings: SyncSettings) -> SyncSettingsResponse:
    return SyncSettingsResponse(**settings.model_dump(exclude={"company_id"}))


@router.get("/available", response_model=AvailableIntegrationsResponse)
async def list_available_integrations(
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """List supported providers."""
    return AvailableIntegrationsResponse(integrations=service.available_providers())


@router.get("/configured", response_model=ConfiguredIntegrationsResponse)
async def list_configured_integrations(
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """List the company's configured integrations."""
    integrations = await service.list_configured(company_id)
    return ConfiguredIntegrationsResponse(integrations=integrations)


@router.post("/configure", response_model=ConfigureResponse)
async def configure_integration(
    request: ConfigureRequest,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Store credentials (and optional sync settings) for a provider."""
    sync_settings = request.sync_settings.model_dump(exclude_none=True) if request.sync_settings else None
    try:
        result = await service.configure(company_id, request.provider, request.credentials, sync_settings)
    except ServiceError as e:
        raise http_error(e)

    return ConfigureResponse(
        ok=result["ok"],
        provider=request.provider,
        configured_at=result["configured_at"],
    )


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    request: ConnectionTestRequest,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Test supplied or stored credentials against the provider."""
    try:
        result = await service.test_connection(company_id, request.provider, request.credentials)
    except ServiceError as e:
        raise http_error(e)

    return ConnectionTestResponse(ok=result.ok, message=result.detail, tested_at=datetime.utcnow())


@router.get("/sync-history", response_model=SyncHistoryResponse)
async def get_sync_history(
    limit: int = Query(20, ge=1, le=100),
    provider: Optional[str] = None,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Most recent sync runs for the company."""
    try:
        runs = await service.sync_history(company_id, limit=limit, provider=provider)
    except ServiceError as e:
        raise http_error(e)

    return SyncHistoryResponse(runs=[run_response(run) for run in runs])


@router.get("/sync-history/{run_id}", response_model=SyncRunResponse)
async def get_sync_run(
    run_id: str,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """A single run, active or finished."""
    try:
        run = await service.get_run(company_id, run_id)
    except ServiceError as e:
        raise http_error(e)

    return run_response(run)


@router.get("/{provider}/sync-settings", response_model=SyncSettingsResponse)
async def get_sync_settings(
    provider: str,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Sync settings with defaults applied."""
    try:
        settings = await service.get_sync_settings(company_id, provider)
    except ServiceError as e:
        raise http_error(e)

    return settings_response(settings)


@router.put("/{provider}/sync-settings", response_model=SyncSettingsUpdateResponse)
async def update_sync_settings(
    provider: str,
    update: SyncSettingsUpdate,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Partially update sync settings."""
    try:
        settings = await service.update_sync_settings(
            company_id, provider, update.model_dump(exclude_none=True)
        )
    except ServiceError as e:
        raise http_error(e)

    return SyncSettingsUpdateResponse(settings=settings_response(settings))


@router.post(
    "/{provider}/sync",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    provider: str,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Start a sync run in the background."""
    try:
        run = await service.trigger_sync(company_id, provider)
    except ServiceError as e:
        raise http_error(e)

    return SyncTriggerResponse(accepted=True, run_id=run.id)


@router.post("/{provider}/sync/cancel", response_model=SyncCancelResponse)
async def cancel_sync(
    provider: str,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Stop the active run before its next item."""
    try:
        run_id = service.cancel_sync(company_id, provider)
    except ServiceError as e:
        raise http_error(e)

    return SyncCancelResponse(cancelled=run_id is not None, run_id=run_id)


@router.post("/{provider}/requeue", response_model=RequeueResponse)
async def requeue_check_ins(
    provider: str,
    request: RequeueRequest,
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Push already-synced check-ins again on the next run."""
    try:
        count = await service.requeue(company_id, provider, request.check_in_ids)
    except ServiceError as e:
        raise http_error(e)

    return RequeueResponse(requeued=count)


@router.delete("/{provider}", response_model=RemoveResponse)
async def remove_integration(
    provider: str,
    purge_mappings: bool = Query(False),
    company_id: str = Depends(get_company_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Remove credentials and settings. Removing twice is harmless."""
    try:
        removed = await service.remove(company_id, provider, purge_mappings=purge_mappings)
    except ServiceError as e:
        raise http_error(e)

    return RemoveResponse(removed=removed)
