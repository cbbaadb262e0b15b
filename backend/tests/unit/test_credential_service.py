"""
Unit Tests for Credential Resolution and API Key Encryption
"""
import json

import pytest
from cryptography.fernet import Fernet

from campaign_engine.core.config import Settings
from campaign_engine.domain.exceptions import ConfigMissingError
from campaign_engine.domain.services.credential_service import (
    CredentialService,
    EnvironmentSource,
    LegacyTelephonyConfigSource,
    TenantApiKeySource,
)
from campaign_engine.infrastructure.credentials.encryption import (
    ApiKeyEncryptionError,
    ApiKeyEncryptionService,
)

from conftest import OTHER_TENANT_ID, TENANT_ID


CURRENT_KEY = Fernet.generate_key().decode()
OLD_KEY = Fernet.generate_key().decode()

ENV_SETTINGS = Settings(
    twilio_account_sid="ACENV",
    twilio_auth_token="env-token",
    twilio_from_phone_number="+15559990000",
)


@pytest.fixture
def encryption():
    return ApiKeyEncryptionService(key=CURRENT_KEY, old_keys=[OLD_KEY])


def seed_api_key(db, encrypted, tenant_id=TENANT_ID, is_active=True):
    db.seed("user_api_keys", {
        "tenant_id": tenant_id,
        "provider": "twilio",
        "is_active": is_active,
        "api_key_encrypted": encrypted,
    })


def twilio_payload(sid="ACKEY"):
    return json.dumps({"account_sid": sid, "auth_token": "key-token", "from_phone_number": "+15558887777"})


def make_service(supabase, encryption, env_settings=ENV_SETTINGS):
    return CredentialService([
        TenantApiKeySource(supabase, encryption),
        LegacyTelephonyConfigSource(supabase),
        EnvironmentSource(env_settings),
    ])


class TestEncryption:
    """Tests for ApiKeyEncryptionService"""

    def test_round_trip(self, encryption):
        token = encryption.encrypt("secret payload")

        assert token != "secret payload"
        assert encryption.decrypt(token) == "secret payload"

    def test_old_key_still_decrypts(self, encryption):
        legacy = Fernet(OLD_KEY.encode()).encrypt(b"rotated").decode()

        assert encryption.decrypt(legacy) == "rotated"

    def test_unknown_key_fails(self, encryption):
        foreign = Fernet(Fernet.generate_key()).encrypt(b"x").decode()

        with pytest.raises(ApiKeyEncryptionError):
            encryption.decrypt(foreign)

    def test_invalid_key_material(self):
        with pytest.raises(ApiKeyEncryptionError):
            ApiKeyEncryptionService(key="not-a-fernet-key", old_keys=[])


class TestCredentialResolution:
    """Tests for the ordered source chain"""

    @pytest.mark.asyncio
    async def test_tenant_api_key_wins(self, supabase, encryption):
        seed_api_key(supabase, encryption.encrypt(twilio_payload()))

        credentials = await make_service(supabase, encryption).resolve(TENANT_ID)

        assert credentials.source == "tenant_api_key"
        assert credentials.account_sid == "ACKEY"
        assert credentials.from_phone_number == "+15558887777"

    @pytest.mark.asyncio
    async def test_inactive_key_is_ignored(self, supabase, encryption):
        seed_api_key(supabase, encryption.encrypt(twilio_payload()), is_active=False)

        credentials = await make_service(supabase, encryption).resolve(TENANT_ID)

        assert credentials.source == "legacy_config"
        assert credentials.account_sid == "AC123"

    @pytest.mark.asyncio
    async def test_undecryptable_key_falls_back(self, supabase, encryption):
        foreign = Fernet(Fernet.generate_key()).encrypt(twilio_payload().encode()).decode()
        seed_api_key(supabase, foreign)

        credentials = await make_service(supabase, encryption).resolve(TENANT_ID)

        assert credentials.source == "legacy_config"

    @pytest.mark.asyncio
    async def test_failing_source_is_skipped(self, supabase, encryption):
        supabase.fail_tables = {"user_api_keys"}

        credentials = await make_service(supabase, encryption).resolve(TENANT_ID)

        assert credentials.source == "legacy_config"

    @pytest.mark.asyncio
    async def test_environment_fallback(self, supabase, encryption):
        credentials = await make_service(supabase, encryption).resolve(OTHER_TENANT_ID)

        assert credentials.source == "environment"
        assert credentials.account_sid == "ACENV"

    @pytest.mark.asyncio
    async def test_incomplete_legacy_row_is_skipped(self, supabase, encryption):
        supabase.seed("telephony_configs", {"tenant_id": OTHER_TENANT_ID, "account_sid": "AC2"})

        credentials = await make_service(supabase, encryption).resolve(OTHER_TENANT_ID)

        assert credentials.source == "environment"

    @pytest.mark.asyncio
    async def test_nothing_configured(self, supabase, encryption):
        service = make_service(supabase, encryption, env_settings=Settings(
            twilio_account_sid=None, twilio_auth_token=None, twilio_from_phone_number=None
        ))

        with pytest.raises(ConfigMissingError) as exc_info:
            await service.resolve(OTHER_TENANT_ID)

        assert exc_info.value.details == {"setup_required": True}


class TestTenantScopedCheck:
    """has_tenant_credentials() ignores the environment fallback"""

    @pytest.mark.asyncio
    async def test_tenant_with_legacy_config(self, supabase, encryption):
        assert await make_service(supabase, encryption).has_tenant_credentials(TENANT_ID) is True

    @pytest.mark.asyncio
    async def test_environment_only_is_not_enough(self, supabase, encryption):
        assert await make_service(supabase, encryption).has_tenant_credentials(OTHER_TENANT_ID) is False
