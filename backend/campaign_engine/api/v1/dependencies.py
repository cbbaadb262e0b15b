"""
API Dependencies
Shared dependencies for tenant identity, Supabase access and engine services
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from supabase import create_client, Client

from campaign_engine.core.config import ConfigManager, get_settings
from campaign_engine.core.tenant_middleware import get_current_tenant
from campaign_engine.domain.exceptions import (
    CampaignEngineError,
    ConfigMissingError,
    NotFoundError,
    PreconditionFailedError,
    ProviderFailureError,
    QueueUnavailableError,
    QuotaExceededError,
)
from campaign_engine.domain.services.call_conversation_engine import CallConversationEngine
from campaign_engine.domain.services.campaign_service import CampaignService
from campaign_engine.domain.services.queue_service import CampaignQueueService
from campaign_engine.domain.services.usage_ledger import UsageLedger

_config: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    global _config
    if _config is None:
        _config = ConfigManager()
    return _config


def get_supabase() -> Client:
    """
    Get Supabase client with validation.

    Raises:
        RuntimeError: If Supabase URL or SERVICE_KEY is not configured
    """
    settings = get_settings()

    if not settings.supabase_url:
        raise RuntimeError(
            "SUPABASE_URL is not configured. "
            "Set SUPABASE_URL environment variable."
        )
    if not settings.supabase_service_key:
        raise RuntimeError(
            "SUPABASE_SERVICE_KEY is not configured. "
            "Set SUPABASE_SERVICE_KEY environment variable."
        )

    return create_client(settings.supabase_url, settings.supabase_service_key)


def require_tenant(tenant_id: Optional[str] = Depends(get_current_tenant)) -> str:
    """
    Dependency requiring an authenticated tenant.

    Raises:
        HTTPException: 401 when the request carries no tenant claim
    """
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return tenant_id


def get_queue_service(request: Request) -> CampaignQueueService:
    """Process-wide queue service created at startup."""
    queue_service = getattr(request.app.state, "queue_service", None)
    if queue_service is None:
        queue_service = CampaignQueueService(config=get_config())
        request.app.state.queue_service = queue_service
    return queue_service


def get_usage_ledger(supabase: Client = Depends(get_supabase)) -> UsageLedger:
    return UsageLedger(supabase, get_config())


def get_campaign_service(
    supabase: Client = Depends(get_supabase),
    queue_service: CampaignQueueService = Depends(get_queue_service),
    usage_ledger: UsageLedger = Depends(get_usage_ledger)
) -> CampaignService:
    return CampaignService(
        supabase,
        queue_service,
        usage_ledger=usage_ledger,
        config=get_config(),
    )


def get_conversation_engine(request: Request) -> Optional[CallConversationEngine]:
    """
    Process-wide conversation engine created at startup; its per-run locks
    must outlive a single request. None when startup could not build it.
    """
    return getattr(request.app.state, "conversation_engine", None)


def to_http_exception(error: CampaignEngineError) -> HTTPException:
    """Translate an engine error into the HTTP response the API returns."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)

    if isinstance(error, PreconditionFailedError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.message)

    if isinstance(error, ConfigMissingError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": error.message, "setup_required": True},
        )

    if isinstance(error, QuotaExceededError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": error.message,
                "details": error.details,
                "upgrade_suggestion": error.upgrade_suggestion,
            },
        )

    if isinstance(error, ProviderFailureError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)

    if isinstance(error, QueueUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=error.message)

    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)
