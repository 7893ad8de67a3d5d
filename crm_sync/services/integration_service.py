"""Integration service: the operations exposed to API callers."""

from typing import Any, Dict, List, Optional
import logging

from crm_sync.core.config import PROVIDER_CONFIGS
from crm_sync.integrations.base import ConnectionResult
from crm_sync.integrations.registry import AdapterFactory, ProviderRegistry
from crm_sync.models import IntegrationStatus, SyncRun, SyncSettings
from crm_sync.services.configuration_registry import ConfigurationRegistry
from crm_sync.services.credential_vault import CredentialVault
from crm_sync.services.remote_mapping import RemoteMappingRepository
from crm_sync.services.sync_history import SyncHistoryLedger
from crm_sync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class IntegrationService:
    """Service for managing CRM integrations."""

    def __init__(
        self,
        vault: CredentialVault,
        configuration: ConfigurationRegistry,
        orchestrator: SyncOrchestrator,
        ledger: SyncHistoryLedger,
        mappings: RemoteMappingRepository,
        adapter_factory: AdapterFactory,
    ):
        self.vault = vault
        self.configuration = configuration
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.mappings = mappings
        self.adapter_factory = adapter_factory

    def available_providers(self) -> List[Dict[str, Any]]:
        return ProviderRegistry.catalog()

    async def list_configured(self, company_id: str) -> List[Dict[str, Any]]:
        """Configured integrations with their state; secrets are never included."""
        integrations = []
        for state in await self.vault.list_configured(company_id):
            entry = state.model_dump()
            entry["name"] = PROVIDER_CONFIGS[state.provider]["name"]
            entry["sync_running"] = self.orchestrator.is_running(company_id, state.provider)
            integrations.append(entry)
        return integrations

    async def configure(
        self,
        company_id: str,
        provider: str,
        credentials: Dict[str, Any],
        sync_settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store credentials and, optionally, initial sync settings."""
        # Validate everything before writing anything
        self.vault.parse(provider, credentials)
        if sync_settings:
            current = await self.configuration.get(company_id, provider)
            self.configuration.merge(current, sync_settings)

        result = await self.vault.configure(company_id, provider, credentials)
        if sync_settings:
            await self.configuration.update(company_id, provider, sync_settings)
        return result

    async def test_connection(
        self,
        company_id: str,
        provider: str,
        credentials: Optional[Dict[str, Any]] = None,
    ) -> ConnectionResult:
        """Test supplied credentials, or the stored ones when none are given."""
        stored = credentials is None
        if stored:
            parsed = await self.vault.get(company_id, provider)
        else:
            parsed = self.vault.parse(provider, credentials)

        async with self.adapter_factory.create(provider, parsed) as adapter:
            result = await adapter.test_connection()

        if stored:
            await self.vault.record_status(
                company_id,
                provider,
                IntegrationStatus.ACTIVE if result.ok else IntegrationStatus.ERROR,
                message=None if result.ok else result.detail,
            )
        return result

    async def get_sync_settings(self, company_id: str, provider: str) -> SyncSettings:
        return await self.configuration.get(company_id, provider)

    async def update_sync_settings(
        self,
        company_id: str,
        provider: str,
        partial: Dict[str, Any],
    ) -> SyncSettings:
        return await self.configuration.update(company_id, provider, partial)

    async def trigger_sync(self, company_id: str, provider: str) -> SyncRun:
        return await self.orchestrator.trigger(company_id, provider)

    def cancel_sync(self, company_id: str, provider: str) -> Optional[str]:
        ProviderRegistry.require(provider)
        return self.orchestrator.cancel(company_id, provider)

    async def requeue(self, company_id: str, provider: str, check_in_ids: List[str]) -> int:
        return await self.orchestrator.requeue(company_id, provider, check_in_ids)

    async def sync_history(
        self,
        company_id: str,
        limit: int = 20,
        provider: Optional[str] = None,
    ) -> List[SyncRun]:
        if provider:
            ProviderRegistry.require(provider)
        return await self.ledger.list(company_id, limit=limit, provider=provider)

    async def get_run(self, company_id: str, run_id: str) -> SyncRun:
        """A run in flight, or a finished run from the ledger."""
        active = self.orchestrator.find_active_run(company_id, run_id)
        if active:
            return active
        return await self.ledger.get(company_id, run_id)

    async def remove(self, company_id: str, provider: str, purge_mappings: bool = False) -> bool:
        """Remove an integration; remote mappings are kept unless purged."""
        self.orchestrator.cancel(company_id, provider)
        removed = await self.vault.remove(company_id, provider)
        if purge_mappings:
            await self.mappings.delete_for(company_id, provider)
        return removed
