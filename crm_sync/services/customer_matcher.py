"""Resolve a local customer identity to an existing remote customer."""

from typing import Callable, Dict, Optional, Tuple
import logging

from crm_sync.integrations.base import BaseProviderAdapter
from crm_sync.models import CustomerIdentity, CustomerMatchStrategy
from crm_sync.models.check_in import normalize_email, normalize_phone, normalize_name

logger = logging.getLogger(__name__)

# field -> normalizer; comparisons are exact on normalized values
NORMALIZERS: Dict[str, Callable[[Optional[str]], Optional[str]]] = {
    "email": normalize_email,
    "phone": normalize_phone,
    "name": normalize_name,
}

MATCH_ORDER: Dict[CustomerMatchStrategy, Tuple[str, ...]] = {
    CustomerMatchStrategy.EMAIL: ("email",),
    CustomerMatchStrategy.PHONE: ("phone",),
    CustomerMatchStrategy.NAME: ("name",),
    CustomerMatchStrategy.ALL: ("email", "phone", "name"),
}


class CustomerMatcher:
    """Searches the remote system field by field, first match wins."""

    def __init__(self, adapter: BaseProviderAdapter):
        self.adapter = adapter

    async def resolve(
        self,
        identity: CustomerIdentity,
        strategy: CustomerMatchStrategy = CustomerMatchStrategy.ALL,
    ) -> Optional[str]:
        for field in MATCH_ORDER[CustomerMatchStrategy(strategy)]:
            remote_id = await self._match_field(identity, field)
            if remote_id:
                logger.debug(f"Matched customer by {field} to {self.adapter.provider} {remote_id}")
                return remote_id
        return None

    async def _match_field(self, identity: CustomerIdentity, field: str) -> Optional[str]:
        normalize = NORMALIZERS[field]
        wanted = normalize(getattr(identity, field))
        if not wanted:
            return None

        # Query with the raw value and let the comparison below decide
        query = getattr(identity, field).strip()
        if field == "phone":
            query = wanted

        for candidate in await self.adapter.search_customers(field, query):
            if normalize(getattr(candidate, field)) == wanted:
                return candidate.remote_id
        return None
