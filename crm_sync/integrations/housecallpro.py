"""Housecall Pro adapter (static API key)."""

from typing import Dict, Any, List, Optional
import logging

from crm_sync.integrations.api_key import ApiKeyAdapter
from crm_sync.integrations.base import RemoteCustomer
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import CheckIn, CustomerIdentity, Location, Photo

logger = logging.getLogger(__name__)


def _address(location: Location) -> Optional[Dict[str, str]]:
    address = {
        "street_line_1": location.address,
        "city": location.city,
        "state": location.state,
        "zip": location.zip_code,
    }
    address = {key: value for key, value in address.items() if value}
    return address or None


@ProviderRegistry.register("housecallpro")
class HousecallProAdapter(ApiKeyAdapter):
    """Housecall Pro home service software."""

    provider = "housecallpro"

    async def probe(self) -> None:
        await self.make_api_request("GET", "/customers", params={"limit": 1})

    async def search_customers(self, field: str, value: str) -> List[RemoteCustomer]:
        response = await self.make_api_request(
            "GET",
            "/customers",
            params={field: value, "limit": 50},
        )
        customers = []
        for item in self.parse_records(response, "customers"):
            name = " ".join(p for p in [item.get("first_name"), item.get("last_name")] if p)
            customers.append(RemoteCustomer(
                remote_id=self.record_id(item),
                name=name or None,
                email=item.get("email"),
                phone=item.get("mobile_number") or item.get("phone"),
            ))
        return customers

    async def upsert_customer(
        self,
        identity: CustomerIdentity,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        first_name, _, last_name = (identity.name or "").strip().partition(" ")
        payload = {
            "first_name": first_name or None,
            "last_name": last_name.strip() or None,
            "email": identity.email,
            "mobile_number": identity.phone,
            "custom_fields": custom_fields or {},
        }
        if remote_id:
            await self.make_api_request("PUT", f"/customers/{remote_id}", json=payload)
            return remote_id

        response = await self.make_api_request("POST", "/customers", json=payload)
        return self.extract_id(response)

    async def push_check_in(
        self,
        check_in: CheckIn,
        customer_id: str,
        remote_id: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload = {
            "title": f"{check_in.job_type} - {check_in.customer.display_name}",
            "description": check_in.work_performed or check_in.notes or "Technician check-in",
            "job_type": check_in.job_type,
            "status": "completed" if check_in.completed_at else "in_progress",
            "customer_id": customer_id,
            "address": _address(check_in.location),
            "scheduled_start": check_in.created_at.isoformat(),
            "scheduled_end": check_in.completed_at.isoformat() if check_in.completed_at else None,
            "notes": check_in.job_notes() or None,
            "custom_fields": custom_fields or {},
        }
        if remote_id:
            await self.make_api_request("PUT", f"/jobs/{remote_id}", json=payload)
            return remote_id

        response = await self.make_api_request("POST", "/jobs", json=payload)
        return self.extract_id(response)

    async def attach_photos(self, remote_job_id: str, photos: List[Photo]) -> None:
        for photo in photos:
            await self.make_api_request(
                "POST",
                f"/jobs/{remote_job_id}/attachments",
                json={"url": photo.url, "description": "Check-in photo"},
            )
