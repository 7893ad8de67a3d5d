"""ServiceTitan adapter (OAuth2 client credentials)."""

from typing import Dict, Any, List, Optional
import logging

from crm_sync.integrations.base import RemoteCustomer
from crm_sync.integrations.oauth2 import OAuth2Adapter
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import CheckIn, CustomerIdentity, Photo

logger = logging.getLogger(__name__)


@ProviderRegistry.register("servicetitan")
class ServiceTitanAdapter(OAuth2Adapter):
    """ServiceTitan field service management."""

    provider = "servicetitan"

    def extra_headers(self) -> Dict[str, str]:
        return {
            "ST-App-Key": self.credentials.client_id,
            "ST-Tenant-ID": self.credentials.tenant_id,
        }

    def tenant_path(self, path: str) -> str:
        return path.format(tenant=self.credentials.tenant_id)

    async def probe(self) -> None:
        await self.make_api_request(
            "GET",
            self.tenant_path("/settings/v2/tenant/{tenant}/technicians"),
            params={"page": 1, "pageSize": 1},
        )

    async def search_customers(self, field: str, value: str) -> List[RemoteCustomer]:
        response = await self.make_api_request(
            "GET",
            self.tenant_path("/crm/v2/tenant/{tenant}/customers"),
            params={field: value, "pageSize": 50},
        )
        customers = []
        for item in self.parse_records(response, "data"):
            customers.append(RemoteCustomer(
                remote_id=self.record_id(item),
                name=item.get("name"),
                email=item.get("email"),
                phone=item.get("phoneNumber") or item.get("phone"),
            ))
        return customers

    def _customer_payload(
        self,
        identity: CustomerIdentity,
        custom_fields: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "name": identity.display_name,
            "email": identity.email,
            "phoneNumber": identity.phone,
            "type": "Residential",
            "customFields": custom_fields or {},
        }

    async def upsert_customer(
        self,
        identity: CustomerIdentity,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload = self._customer_payload(identity, custom_fields)
        if remote_id:
            await self.make_api_request(
                "PUT",
                self.tenant_path("/crm/v2/tenant/{tenant}/customers/") + remote_id,
                json=payload,
            )
            return remote_id

        response = await self.make_api_request(
            "POST",
            self.tenant_path("/crm/v2/tenant/{tenant}/customers"),
            json=payload,
        )
        return self.extract_id(response)

    def _job_payload(
        self,
        check_in: CheckIn,
        customer_id: str,
        custom_fields: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "summary": f"{check_in.job_type} - {check_in.customer.display_name}",
            "jobType": check_in.job_type,
            "status": "Completed" if check_in.completed_at else "InProgress",
            "customerId": customer_id,
            "address": check_in.location.one_line() or None,
            "scheduledStartDate": check_in.created_at.isoformat(),
            "scheduledEndDate": check_in.completed_at.isoformat() if check_in.completed_at else None,
            "technicianId": check_in.technician_id,
            "notes": check_in.job_notes() or None,
            "customFields": custom_fields or {},
        }

    async def push_check_in(
        self,
        check_in: CheckIn,
        customer_id: str,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload = self._job_payload(check_in, customer_id, custom_fields)
        if remote_id:
            await self.make_api_request(
                "PUT",
                self.tenant_path("/jpm/v2/tenant/{tenant}/jobs/") + remote_id,
                json=payload,
            )
            return remote_id

        response = await self.make_api_request(
            "POST",
            self.tenant_path("/jpm/v2/tenant/{tenant}/jobs"),
            json=payload,
        )
        return self.extract_id(response)

    async def attach_photos(self, remote_job_id: str, photos: List[Photo]) -> None:
        path = self.tenant_path("/forms/v2/tenant/{tenant}/jobs/") + f"{remote_job_id}/attachments"
        for photo in photos:
            await self.make_api_request(
                "POST",
                path,
                json={"url": photo.url, "description": "Check-in photo"},
            )
