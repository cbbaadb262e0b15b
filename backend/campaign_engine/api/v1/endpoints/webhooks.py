"""
Twilio Call Webhooks
TwiML endpoints Twilio calls during an outbound campaign call

Registered per call by the worker with base
{SERVER_URL}/api/v1/calls/twilio/webhook/{run_id}. Twilio posts
application/x-www-form-urlencoded bodies and expects TwiML back, even
when the engine could not be started.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Form
from fastapi.responses import Response

from campaign_engine.api.v1.dependencies import get_conversation_engine
from campaign_engine.domain.services.call_conversation_engine import (
    CallConversationEngine,
    ERROR_MESSAGE,
)
from campaign_engine.infrastructure.telephony import twiml

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls/twilio/webhook", tags=["calls"])


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="text/xml")


def _engine_missing(run_id: str) -> None:
    logger.error(f"Call conversation engine is not configured; answering run {run_id} with a fallback")


@router.post("/{run_id}")
async def twilio_call_webhook(
    run_id: str,
    engine: Optional[CallConversationEngine] = Depends(get_conversation_engine)
):
    """Call answered: greet and start listening"""
    if engine is None:
        _engine_missing(run_id)
        return _twiml(twiml.say_and_hangup(ERROR_MESSAGE))
    return _twiml(await engine.handle_initiation(run_id))


@router.post("/{run_id}/gather")
async def twilio_gather_webhook(
    run_id: str,
    SpeechResult: Optional[str] = Form(None),
    Confidence: Optional[float] = Form(None),
    engine: Optional[CallConversationEngine] = Depends(get_conversation_engine)
):
    """Speech gathered: reply and keep listening"""
    if engine is None:
        _engine_missing(run_id)
        return _twiml(twiml.say_and_hangup(ERROR_MESSAGE))
    return _twiml(await engine.handle_gather(run_id, SpeechResult, Confidence))


@router.post("/{run_id}/status")
async def twilio_status_webhook(
    run_id: str,
    CallStatus: Optional[str] = Form(None),
    CallDuration: Optional[str] = Form(None),
    engine: Optional[CallConversationEngine] = Depends(get_conversation_engine)
):
    if engine is None:
        _engine_missing(run_id)
        return _twiml(twiml.empty_response())
    return _twiml(await engine.handle_status(run_id, CallStatus, CallDuration))


@router.post("/{run_id}/recording")
async def twilio_recording_webhook(
    run_id: str,
    RecordingUrl: Optional[str] = Form(None),
    RecordingDuration: Optional[str] = Form(None),
    engine: Optional[CallConversationEngine] = Depends(get_conversation_engine)
):
    if engine is None:
        _engine_missing(run_id)
        return _twiml(twiml.empty_response())
    return _twiml(await engine.handle_recording(run_id, RecordingUrl, RecordingDuration))
