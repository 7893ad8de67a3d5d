"""Services module for CRM sync."""

from .credential_vault import CredentialVault
from .configuration_registry import ConfigurationRegistry
from .remote_mapping import RemoteMappingRepository
from .check_in_source import CheckInRepository
from .sync_history import SyncHistoryLedger
from .customer_matcher import CustomerMatcher
from .sync_orchestrator import SyncOrchestrator, ItemOutcome
from .integration_service import IntegrationService
from .container import ServiceContainer, build_services

__all__ = [
    "CredentialVault",
    "ConfigurationRegistry",
    "RemoteMappingRepository",
    "CheckInRepository",
    "SyncHistoryLedger",
    "CustomerMatcher",
    "SyncOrchestrator",
    "ItemOutcome",
    "IntegrationService",
    "ServiceContainer",
    "build_services",
]
