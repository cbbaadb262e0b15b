"""
Telephony Provider Interface
Abstract base class for outbound-call providers
"""
from abc import ABC, abstractmethod
from typing import Optional
from pydantic import BaseModel


class TelephonyCredentials(BaseModel):
    """Resolved credential bundle for placing calls"""
    account_sid: str
    auth_token: str
    from_phone_number: str
    source: str = "environment"  # tenant_api_key | legacy_config | environment


class PlaceCallResult(BaseModel):
    """Outcome of an outbound call request"""
    success: bool
    provider_call_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class TelephonyProvider(ABC):
    """Abstract base class for telephony providers"""

    @abstractmethod
    async def place_call(
        self,
        to_number: str,
        from_number: str,
        credentials: TelephonyCredentials,
        webhook_base_url: str
    ) -> PlaceCallResult:
        """
        Initiate an outbound call

        The provider must register four callbacks rooted at webhook_base_url:
        the base itself (initiation), /status, /recording and /gather.

        Args:
            to_number: Destination phone number (E.164)
            from_number: Caller ID number
            credentials: Account credentials to dial with
            webhook_base_url: Root of the engine's per-run webhook paths

        Returns:
            PlaceCallResult; provider errors are reported, not raised
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
