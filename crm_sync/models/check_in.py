"""Check-in records produced by the record-management subsystem."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field
import re


_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().casefold() or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return _NON_DIGITS.sub("", value) or None


def normalize_name(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return _WHITESPACE.sub(" ", value).strip().casefold() or None


class CustomerIdentity(BaseModel):
    """Customer details captured on a check-in."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    customer_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def local_key(self) -> Optional[str]:
        """Stable local key used for the customer RemoteMapping."""
        if self.customer_id:
            return self.customer_id
        email = normalize_email(self.email)
        if email:
            return f"email:{email}"
        phone = normalize_phone(self.phone)
        if phone:
            return f"phone:{phone}"
        name = normalize_name(self.name)
        if name:
            return f"name:{name}"
        return None

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or self.email or self.phone or "Unknown Customer"


class Location(BaseModel):
    """Service address and GPS position."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None

    def one_line(self) -> str:
        return ", ".join(p for p in [self.address, self.city, self.state, self.zip_code] if p)


class Photo(BaseModel):
    url: str


class CheckIn(BaseModel):
    """A technician's record of a completed service visit."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    company_id: str
    technician_id: Optional[str] = None
    customer: CustomerIdentity = Field(default_factory=CustomerIdentity)
    job_type: str = "Service"
    notes: Optional[str] = None
    work_performed: Optional[str] = None
    materials_used: Optional[str] = None
    location: Location = Field(default_factory=Location)
    photos: List[Photo] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def job_notes(self) -> str:
        parts = [
            self.notes,
            f"Work Performed: {self.work_performed}" if self.work_performed else None,
            f"Materials Used: {self.materials_used}" if self.materials_used else None,
        ]
        return "\n\n".join(p for p in parts if p)

    def custom_fields(self, mapping: Dict[str, str]) -> Dict[str, Any]:
        """Project check-in metadata onto CRM custom field names."""
        return {
            crm_field: self.metadata[key]
            for key, crm_field in mapping.items()
            if key in self.metadata
        }
