"""Encrypted per-company provider credentials."""

from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from crm_sync.core.config import Settings, get_settings
from crm_sync.core.database import Database
from crm_sync.core.exceptions import CredentialsUnreadableError, NotConfiguredError, ValidationError
from crm_sync.integrations.registry import ProviderRegistry
from crm_sync.models import (
    AuthType,
    IntegrationState,
    IntegrationStatus,
    ProviderCredentials,
    StoredCredential,
)
from crm_sync.utils.crypto import DecryptionError, encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)

_AUTH_TAGS = {auth_type.value for auth_type in AuthType}

_ERROR_TEXT = {
    "missing": "is required",
    "string_too_short": "must not be empty",
    "string_type": "must be a string",
}


def describe_validation_error(subject: str, error: PydanticValidationError) -> str:
    """Turn a pydantic error into one message naming every offending field."""
    problems = []
    for item in error.errors():
        loc = [str(part) for part in item["loc"]]
        # Drop the union tag pydantic prefixes to credential errors
        if len(loc) > 1 and loc[0] in _AUTH_TAGS:
            loc = loc[1:]
        field = ".".join(loc) or "value"
        problems.append(f"{field} {_ERROR_TEXT.get(item['type'], item['msg'].lower())}")
    return f"Invalid {subject}: " + "; ".join(problems)


class CredentialVault:
    """Stores provider credentials encrypted at rest.

    Records are keyed by (company_id, provider); configuring twice replaces the
    secret and keeps the original creation time.
    """

    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self._credentials = TypeAdapter(ProviderCredentials)

    @property
    def collection(self):
        return self.db.get_collection("credentials")

    def parse(self, provider: str, credentials: Dict[str, Any]) -> ProviderCredentials:
        """Validate raw credentials against the provider's auth type."""
        auth_type = ProviderRegistry.auth_type_for(provider)
        if not isinstance(credentials, dict):
            raise ValidationError("Credentials must be an object")

        payload = {key: value for key, value in credentials.items() if key != "auth_type"}
        payload["auth_type"] = auth_type.value
        try:
            return self._credentials.validate_python(payload)
        except PydanticValidationError as e:
            raise ValidationError(describe_validation_error(f"{provider} credentials", e)) from e

    async def configure(
        self,
        company_id: str,
        provider: str,
        credentials: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Validate, encrypt and store credentials."""
        parsed = self.parse(provider, credentials)
        now = datetime.utcnow()
        secret_blob = encrypt_secret(
            parsed.model_dump(),
            self.settings.encryption_key,
            self.settings.encryption_salt,
        )

        await self.collection.update_one(
            {"company_id": company_id, "provider": provider},
            {
                "$set": {
                    "auth_type": parsed.auth_type,
                    "secret_blob": secret_blob,
                    "updated_at": now,
                    "status": IntegrationStatus.INACTIVE.value,
                    "status_message": None,
                },
                "$setOnInsert": {"created_at": now, "last_synced_at": None},
            },
            upsert=True,
        )

        logger.info(
            f"Configured {provider} integration for company {company_id}",
            extra={"company_id": company_id, "provider": provider},
        )
        return {"ok": True, "configured_at": now}

    async def get_record(self, company_id: str, provider: str) -> Optional[StoredCredential]:
        doc = await self.collection.find_one({"company_id": company_id, "provider": provider})
        if doc:
            doc.pop("_id", None)
            return StoredCredential(**doc)
        return None

    async def get(self, company_id: str, provider: str) -> ProviderCredentials:
        """Return decrypted credentials."""
        ProviderRegistry.require(provider)
        record = await self.get_record(company_id, provider)
        if record is None:
            raise NotConfiguredError(provider)

        try:
            secret = decrypt_secret(
                record.secret_blob,
                self.settings.encryption_key,
                self.settings.encryption_salt,
            )
        except DecryptionError as e:
            logger.error(f"Stored {provider} credentials for company {company_id} do not decrypt")
            raise CredentialsUnreadableError(provider) from e
        return self._credentials.validate_python(secret)

    async def is_configured(self, company_id: str, provider: str) -> bool:
        count = await self.collection.count_documents(
            {"company_id": company_id, "provider": provider}
        )
        return count > 0

    async def list_configured(self, company_id: str) -> List[IntegrationState]:
        """List configured integrations without their secrets."""
        cursor = self.collection.find(
            {"company_id": company_id},
            {"_id": 0, "secret_blob": 0},
        ).sort("provider", 1)

        states = []
        async for doc in cursor:
            states.append(IntegrationState(**doc))
        return states

    async def record_status(
        self,
        company_id: str,
        provider: str,
        status: IntegrationStatus,
        message: Optional[str] = None,
        last_synced_at: Optional[datetime] = None,
    ) -> None:
        """Update the integration state; never creates a record."""
        update: Dict[str, Any] = {
            "status": IntegrationStatus(status).value,
            "status_message": message,
        }
        if last_synced_at is not None:
            update["last_synced_at"] = last_synced_at

        await self.collection.update_one(
            {"company_id": company_id, "provider": provider},
            {"$set": update},
        )

    async def remove(self, company_id: str, provider: str) -> bool:
        """Delete credentials and sync settings. Removing twice is a no-op."""
        ProviderRegistry.require(provider)
        key = {"company_id": company_id, "provider": provider}

        result = await self.collection.delete_one(key)
        await self.db.get_collection("sync_settings").delete_one(key)

        if result.deleted_count > 0:
            logger.info(
                f"Removed {provider} integration for company {company_id}",
                extra={"company_id": company_id, "provider": provider},
            )
            return True
        return False
