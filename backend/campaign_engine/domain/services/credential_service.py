"""
Credential Service
Resolves a tenant's Twilio credentials from an ordered list of sources.

Order:
1. Tenant API key (user_api_keys, Fernet-encrypted JSON payload)
2. Legacy shared telephony config (telephony_configs)
3. Process-wide environment fallback (TWILIO_* variables)
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from supabase import Client

from campaign_engine.core.config import Settings, get_settings
from campaign_engine.domain.exceptions import ConfigMissingError
from campaign_engine.domain.interfaces.telephony_provider import TelephonyCredentials
from campaign_engine.infrastructure.credentials.encryption import (
    ApiKeyEncryptionService,
    ApiKeyEncryptionError,
    get_encryption_service,
)

logger = logging.getLogger(__name__)


class CredentialSource(ABC):
    """One place credentials may come from"""

    # Tenant-scoped sources count as "configured" for campaign start
    tenant_scoped: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def resolve(self, tenant_id: str) -> Optional[TelephonyCredentials]:
        """Return credentials, or None when this source has none for the tenant."""
        pass


class TenantApiKeySource(CredentialSource):
    """Active twilio row in user_api_keys; payload is encrypted JSON."""

    TABLE = "user_api_keys"

    def __init__(self, supabase: Client, encryption: Optional[ApiKeyEncryptionService] = None):
        self._supabase = supabase
        self._encryption = encryption or get_encryption_service()

    @property
    def name(self) -> str:
        return "tenant_api_key"

    async def resolve(self, tenant_id: str) -> Optional[TelephonyCredentials]:
        response = self._supabase.table(self.TABLE).select("api_key_encrypted").eq(
            "tenant_id", tenant_id
        ).eq("provider", "twilio").eq("is_active", True).execute()

        if not response.data:
            return None

        try:
            payload = json.loads(self._encryption.decrypt(response.data[0]["api_key_encrypted"]))
        except (ApiKeyEncryptionError, ValueError, KeyError) as e:
            logger.warning(f"Unusable Twilio API key for tenant {tenant_id}: {e}")
            return None

        return _credentials_from_row(payload, self.name)


class LegacyTelephonyConfigSource(CredentialSource):
    """Plaintext row in the older telephony_configs table."""

    TABLE = "telephony_configs"

    def __init__(self, supabase: Client):
        self._supabase = supabase

    @property
    def name(self) -> str:
        return "legacy_config"

    async def resolve(self, tenant_id: str) -> Optional[TelephonyCredentials]:
        response = self._supabase.table(self.TABLE).select("*").eq("tenant_id", tenant_id).execute()
        if not response.data:
            return None
        return _credentials_from_row(response.data[0], self.name)


class EnvironmentSource(CredentialSource):
    """TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN / TWILIO_FROM_PHONE_NUMBER"""

    tenant_scoped = False

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings

    @property
    def name(self) -> str:
        return "environment"

    async def resolve(self, tenant_id: str) -> Optional[TelephonyCredentials]:
        settings = self._settings or get_settings()
        return _credentials_from_row({
            "account_sid": settings.twilio_account_sid,
            "auth_token": settings.twilio_auth_token,
            "from_phone_number": settings.twilio_from_phone_number,
        }, self.name)


def _credentials_from_row(row: dict, source: str) -> Optional[TelephonyCredentials]:
    account_sid = row.get("account_sid")
    auth_token = row.get("auth_token")
    from_phone_number = row.get("from_phone_number")

    if not (account_sid and auth_token and from_phone_number):
        return None

    return TelephonyCredentials(
        account_sid=account_sid,
        auth_token=auth_token,
        from_phone_number=from_phone_number,
        source=source,
    )


class CredentialService:
    """
    Single entry point for telephony credential lookups.

    Sources are tried in order; a source that errors is logged and skipped
    so a broken tenant key still falls back to the next source.
    """

    def __init__(self, sources: List[CredentialSource]):
        self._sources = sources

    @classmethod
    def default(cls, supabase: Client) -> "CredentialService":
        return cls([
            TenantApiKeySource(supabase),
            LegacyTelephonyConfigSource(supabase),
            EnvironmentSource(),
        ])

    async def resolve(self, tenant_id: str) -> TelephonyCredentials:
        """
        Resolve credentials for a tenant.

        Raises:
            ConfigMissingError: No source produced usable credentials
        """
        credentials = await self._first_match(tenant_id, self._sources)
        if credentials is None:
            raise ConfigMissingError(
                "Twilio not configured. Please add your Twilio credentials in API Key Settings.",
                details={"setup_required": True},
            )
        return credentials

    async def has_tenant_credentials(self, tenant_id: str) -> bool:
        """True when a tenant-scoped source (not the environment) has credentials."""
        scoped = [s for s in self._sources if s.tenant_scoped]
        return await self._first_match(tenant_id, scoped) is not None

    async def _first_match(
        self,
        tenant_id: str,
        sources: List[CredentialSource]
    ) -> Optional[TelephonyCredentials]:
        for source in sources:
            try:
                credentials = await source.resolve(tenant_id)
            except Exception as e:
                logger.error(f"Credential source {source.name} failed for tenant {tenant_id}: {e}")
                continue

            if credentials is not None:
                logger.debug(f"Resolved Twilio credentials for tenant {tenant_id} from {source.name}")
                return credentials

        return None
