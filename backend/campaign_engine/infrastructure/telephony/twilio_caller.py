"""
Twilio Call Origination Service
Handles outbound call initiation via the Twilio REST API
"""
import asyncio
import logging
from typing import Callable, Optional

from twilio.rest import Client

from campaign_engine.domain.interfaces.telephony_provider import (
    TelephonyProvider,
    TelephonyCredentials,
    PlaceCallResult,
)

logger = logging.getLogger(__name__)


class TwilioCaller(TelephonyProvider):
    """
    Twilio Voice client for outbound call origination.

    Each call is placed with the credentials resolved for its tenant, so a
    REST client is built per call rather than once per process. The Twilio
    SDK is synchronous and runs in a worker thread.

    Callbacks registered on the call:
    - url: {base}                       initiation TwiML
    - status_callback: {base}/status    call progress
    - recording_status_callback: {base}/recording
    """

    STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]

    def __init__(
        self,
        record: bool = True,
        client_factory: Optional[Callable[[str, str], Client]] = None
    ):
        self._record = record
        self._client_factory = client_factory or Client

    async def place_call(
        self,
        to_number: str,
        from_number: str,
        credentials: TelephonyCredentials,
        webhook_base_url: str
    ) -> PlaceCallResult:
        logger.info(f"Initiating call: {from_number} -> {to_number}")

        try:
            client = self._client_factory(credentials.account_sid, credentials.auth_token)
            call = await asyncio.to_thread(
                client.calls.create,
                from_=from_number,
                to=to_number,
                url=webhook_base_url,
                method="POST",
                status_callback=f"{webhook_base_url}/status",
                status_callback_event=self.STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                record=self._record,
                recording_status_callback=f"{webhook_base_url}/recording",
            )
        except Exception as e:
            logger.error(f"Twilio call initiation failed: {e}")
            return PlaceCallResult(success=False, error=str(e))

        logger.info(f"Twilio call initiated: {call.sid}")
        return PlaceCallResult(success=True, provider_call_id=call.sid, status=call.status)

    @property
    def name(self) -> str:
        return "twilio"
