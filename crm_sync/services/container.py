"""Wiring of the service graph."""

from dataclasses import dataclass
from typing import Optional
import logging

import httpx

from crm_sync.core.config import Settings, get_settings
from crm_sync.core.database import Database
from crm_sync.integrations.oauth2 import TokenCache
from crm_sync.integrations.registry import AdapterFactory
from crm_sync.services.check_in_source import CheckInRepository
from crm_sync.services.configuration_registry import ConfigurationRegistry
from crm_sync.services.credential_vault import CredentialVault
from crm_sync.services.integration_service import IntegrationService
from crm_sync.services.remote_mapping import RemoteMappingRepository
from crm_sync.services.sync_history import SyncHistoryLedger
from crm_sync.services.sync_orchestrator import SyncOrchestrator
from crm_sync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the API layer needs, built once per process."""
    db: Database
    vault: CredentialVault
    configuration: ConfigurationRegistry
    mappings: RemoteMappingRepository
    check_ins: CheckInRepository
    ledger: SyncHistoryLedger
    adapter_factory: AdapterFactory
    orchestrator: SyncOrchestrator
    integrations: IntegrationService
    rate_limiter: Optional[RateLimiter] = None


def build_services(
    db: Database,
    settings: Optional[Settings] = None,
    rate_limiter: Optional[RateLimiter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ServiceContainer:
    settings = settings or get_settings()

    vault = CredentialVault(db, settings)
    configuration = ConfigurationRegistry(db)
    mappings = RemoteMappingRepository(db)
    check_ins = CheckInRepository(db)
    ledger = SyncHistoryLedger(db, settings)
    adapter_factory = AdapterFactory(
        settings=settings,
        token_cache=TokenCache(),
        rate_limiter=rate_limiter,
        transport=transport,
    )
    orchestrator = SyncOrchestrator(
        vault=vault,
        configuration=configuration,
        mappings=mappings,
        check_ins=check_ins,
        ledger=ledger,
        adapter_factory=adapter_factory,
        settings=settings,
    )
    integrations = IntegrationService(
        vault=vault,
        configuration=configuration,
        orchestrator=orchestrator,
        ledger=ledger,
        mappings=mappings,
        adapter_factory=adapter_factory,
    )
    return ServiceContainer(
        db=db,
        vault=vault,
        configuration=configuration,
        mappings=mappings,
        check_ins=check_ins,
        ledger=ledger,
        adapter_factory=adapter_factory,
        orchestrator=orchestrator,
        integrations=integrations,
        rate_limiter=rate_limiter,
    )
