"""
Call Conversation Engine
Drives a live phone conversation through Twilio webhooks.

Each webhook rebuilds the conversation from the persisted run, so any
process can answer any webhook:

    initiation -> greeting + gather
    gather     -> user turn + AI reply + gather (repeats)
    status     -> terminal status, duration and disposition
    recording  -> recording URL attached

Handlers always return TwiML; failures are spoken to the caller rather
than surfaced as HTTP errors.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import Client

from campaign_engine.core.config import ConfigManager
from campaign_engine.core.keyed_lock import KeyedLock
from campaign_engine.domain.exceptions import NotFoundError, QuotaExceededError
from campaign_engine.domain.interfaces.llm_provider import LLMProvider
from campaign_engine.domain.models.call_run import (
    CallRun,
    Disposition,
    TERMINAL_CALL_STATUSES,
)
from campaign_engine.domain.models.usage import UsageEstimate, UsageProvider, UsageRecord
from campaign_engine.domain.services.transcript_service import (
    TranscriptTurn,
    render_transcript,
    to_history,
    turns_from_run,
)
from campaign_engine.domain.services.usage_ledger import UsageLedger
from campaign_engine.domain.services.usage_recorder import UsageRecorder
from campaign_engine.infrastructure.telephony import twiml

logger = logging.getLogger(__name__)

GREETING_PROMPT = "How can I assist you today?"
FALLBACK_GREETING = "Hello, this call may be recorded for quality purposes. How can I help you today?"
FALLBACK_GREETING_PROMPT = "Please say something after the beep."
REPLY_PROMPT = "What else can I help you with?"
RETRY_MESSAGE = "I'm sorry, I didn't catch that. Could you please repeat?"
RETRY_PROMPT = "Please try again."
ERROR_MESSAGE = "I'm sorry, there was an error. Please try again later."
QUOTA_MESSAGE = "I'm sorry, this account has reached its usage limit. Please try again later. Goodbye."

# Keywords checked against the caller's last utterance, in priority order
DISPOSITION_KEYWORDS = (
    (Disposition.USER_HANGUP, ("bye", "goodbye")),
    (Disposition.TRANSFER_REQUESTED, ("transfer", "speak to someone")),
    (Disposition.NOT_INTERESTED, ("not interested", "no thanks")),
    (Disposition.CALLBACK_REQUESTED, ("call back", "later")),
)


def detect_call_disposition(turns: List[TranscriptTurn]) -> str:
    """
    Classify how a completed call ended from its transcript.

    Only the last three turns are considered; a window without any caller
    speech means the caller went quiet.
    """
    if not turns:
        return Disposition.NO_RESPONSE.value

    user_turns = [turn for turn in turns[-3:] if turn.role == "user"]
    if not user_turns:
        return Disposition.USER_IDLE.value

    last_message = (user_turns[-1].content or "").lower()
    for disposition, keywords in DISPOSITION_KEYWORDS:
        if any(keyword in last_message for keyword in keywords):
            return disposition.value

    return Disposition.COMPLETED.value


def gather_action_path(run_id: str) -> str:
    return f"/api/v1/calls/twilio/webhook/{run_id}/gather"


class CallConversationEngine:
    """
    Webhook handlers for one conversation per call run.

    Webhooks for the same run are serialized in-process by a per-run lock.
    """

    RUNS_TABLE = "agent_runs"
    AGENTS_TABLE = "agents"

    def __init__(
        self,
        supabase: Client,
        llm_provider: LLMProvider,
        usage_ledger: Optional[UsageLedger] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        config: Optional[ConfigManager] = None
    ):
        self._supabase = supabase
        self._llm = llm_provider
        self._config = config or ConfigManager()
        self._ledger = usage_ledger or UsageLedger(supabase, self._config)
        self._recorder = usage_recorder or UsageRecorder(self._ledger)

        telephony = self._config.get_provider_config("telephony") or {}
        self.voice = telephony.get("voice", twiml.DEFAULT_VOICE)
        self.gather_timeout = int(telephony.get("gather_timeout", twiml.DEFAULT_GATHER_TIMEOUT))
        self.tokens_per_turn = int(self._config.get("usage.estimated_tokens_per_turn", 100))

        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_initiation(self, run_id: str) -> str:
        """Answer the call: greeting followed by the first gather."""
        try:
            async with self._locks(run_id):
                run = await self._get_run(run_id)
                if run.is_terminal:
                    logger.info(f"Ignoring webhook for run {run_id}: already {run.status}")
                    return twiml.empty_response()
                agent = await self._get_agent(run.agent_id)
                tenant_id = run.tenant_id or agent.get("tenant_id")

                await self._ledger.ensure_call_allowed(
                    tenant_id, UsageEstimate(tokens=self.tokens_per_turn)
                )

                prompt = (
                    f"{agent.get('description') or ''}\n\n"
                    f"Generate a brief, professional greeting for this {agent.get('type')} call. "
                    f"Introduce yourself and state the purpose. Keep it under 3 sentences."
                )
                result = await self._llm.generate(
                    agent_prompt=prompt,
                    history=[],
                    new_user_message="Generate greeting",
                    model=agent.get("llm_model"),
                )

                if not result.success:
                    logger.warning(f"Greeting generation failed for run {run_id}: {result.error}")
                    return self._gather(run_id, FALLBACK_GREETING, FALLBACK_GREETING_PROMPT)

                turns = turns_from_run(run.model_dump())
                turns.append(TranscriptTurn(role="assistant", content=result.text))
                self._save_turns(run, turns, result.token_usage)
                self._record_tokens(tenant_id, result.token_usage)

                return self._gather(run_id, result.text, GREETING_PROMPT)

        except QuotaExceededError as e:
            logger.info(f"Quota exceeded at call start for run {run_id}: {e.message}")
            return twiml.say_and_hangup(QUOTA_MESSAGE, voice=self.voice)
        except Exception as e:
            logger.error(f"Twilio webhook error for run {run_id}: {e}", exc_info=True)
            return twiml.say_and_hangup(ERROR_MESSAGE, voice=self.voice)

    async def handle_gather(
        self,
        run_id: str,
        speech_result: Optional[str] = None,
        confidence: Optional[float] = None
    ) -> str:
        """
        Handle one caller utterance and speak the reply.

        The caller's turn is appended before the reply; nothing is persisted
        when generation fails.
        """
        try:
            async with self._locks(run_id):
                run = await self._get_run(run_id)
                if run.is_terminal:
                    logger.info(f"Ignoring webhook for run {run_id}: already {run.status}")
                    return twiml.empty_response()
                agent = await self._get_agent(run.agent_id)
                tenant_id = run.tenant_id or agent.get("tenant_id")

                turns = turns_from_run(run.model_dump())
                history = to_history(turns)

                if speech_result:
                    turns.append(TranscriptTurn(role="user", content=speech_result, confidence=confidence))

                await self._ledger.ensure_call_allowed(
                    tenant_id, UsageEstimate(tokens=self.tokens_per_turn)
                )

                result = await self._llm.generate(
                    agent_prompt=agent.get("description") or "",
                    history=history,
                    new_user_message=speech_result or "Hello",
                    model=agent.get("llm_model"),
                )
                if not result.success:
                    logger.warning(f"Reply generation failed for run {run_id}: {result.error}")
                    return self._gather(run_id, RETRY_MESSAGE, RETRY_PROMPT)

                turns.append(TranscriptTurn(role="assistant", content=result.text))
                self._save_turns(run, turns, result.token_usage)
                self._record_tokens(tenant_id, result.token_usage)

                return self._gather(run_id, result.text, REPLY_PROMPT)

        except QuotaExceededError as e:
            logger.info(f"Quota exceeded mid-call for run {run_id}: {e.message}")
            return twiml.say_and_hangup(QUOTA_MESSAGE, voice=self.voice)
        except Exception as e:
            logger.error(f"Twilio gather error for run {run_id}: {e}", exc_info=True)
            return self._gather(run_id, RETRY_MESSAGE, RETRY_PROMPT)

    async def handle_status(
        self,
        run_id: str,
        call_status: Optional[str],
        call_duration: Optional[str] = None
    ) -> str:
        """
        Apply a provider status callback.

        Only terminal statuses change the run, and only once.
        """
        logger.info(f"Call status update for run {run_id}: {call_status}")

        mapping = TERMINAL_CALL_STATUSES.get((call_status or "").lower())
        if mapping is None:
            return twiml.empty_response()

        try:
            async with self._locks(run_id):
                run = await self._get_run(run_id)
                if run.is_terminal:
                    logger.info(f"Ignoring {call_status} for run {run_id}: already {run.status}")
                    return twiml.empty_response()

                status, disposition = mapping
                if disposition is None:
                    disposition_value = detect_call_disposition(turns_from_run(run.model_dump()))
                else:
                    disposition_value = disposition.value

                duration = _parse_int(call_duration)
                self._update_run(run_id, {
                    "status": status.value,
                    "disposition": disposition_value,
                    "duration_seconds": duration,
                    "completed_at": datetime.utcnow().isoformat(),
                })

                if duration and run.tenant_id:
                    self._recorder.submit(run.tenant_id, UsageRecord(
                        provider=UsageProvider.TWILIO,
                        duration_seconds=duration,
                        calls=0,
                    ))

                logger.info(f"Run {run_id} ended: {status.value} ({disposition_value})")
        except Exception as e:
            logger.error(f"Twilio status update error for run {run_id}: {e}", exc_info=True)

        return twiml.empty_response()

    async def handle_recording(
        self,
        run_id: str,
        recording_url: Optional[str],
        recording_duration: Optional[str] = None
    ) -> str:
        """Attach the call recording; allowed on terminal runs."""
        logger.info(f"Recording completed for run {run_id}: {recording_url}")
        try:
            await self._get_run(run_id)
            self._update_run(run_id, {
                "recording_url": recording_url,
                "recording_duration": _parse_int(recording_duration),
            })
        except Exception as e:
            logger.error(f"Twilio recording update error for run {run_id}: {e}", exc_info=True)

        return twiml.empty_response()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _gather(self, run_id: str, text: str, prompt: str) -> str:
        return twiml.say_and_gather(
            text,
            action_url=gather_action_path(run_id),
            prompt=prompt,
            voice=self.voice,
            timeout=self.gather_timeout,
        )

    async def _get_run(self, run_id: str) -> CallRun:
        response = self._supabase.table(self.RUNS_TABLE).select("*").eq("id", run_id).execute()
        if not response.data:
            raise NotFoundError(f"Run {run_id} not found")
        return CallRun(**response.data[0])

    async def _get_agent(self, agent_id: str) -> Dict[str, Any]:
        response = self._supabase.table(self.AGENTS_TABLE).select("*").eq("id", agent_id).execute()
        if not response.data:
            raise NotFoundError(f"Agent {agent_id} not found")
        return response.data[0]

    def _save_turns(self, run: CallRun, turns: List[TranscriptTurn], tokens: int) -> None:
        self._update_run(run.id, {
            "transcript_turns": [turn.to_dict() for turn in turns],
            "transcript_text": render_transcript(turns),
            "tokens_used": (run.tokens_used or 0) + tokens,
        })

    def _update_run(self, run_id: str, update: Dict[str, Any]) -> None:
        self._supabase.table(self.RUNS_TABLE).update(update).eq("id", run_id).execute()

    def _record_tokens(self, tenant_id: Optional[str], tokens: int) -> None:
        if tenant_id and tokens:
            self._recorder.submit(tenant_id, UsageRecord(
                provider=UsageProvider.GROQ,
                tokens=tokens,
                calls=0,
            ))


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
