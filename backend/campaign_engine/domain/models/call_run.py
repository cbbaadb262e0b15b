"""
Call Run Domain Models
Record of one individual phone or web call and its conversation
"""
import random
import time
from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class CallRunType(str, Enum):
    WEB_CALL = "WEB_CALL"
    PHONE_CALL = "PHONE_CALL"


class CallRunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Disposition(str, Enum):
    """Terminal classification of how a call ended"""
    COMPLETED = "completed"
    USER_HANGUP = "user_hangup"
    TRANSFER_REQUESTED = "transfer_requested"
    NOT_INTERESTED = "not_interested"
    CALLBACK_REQUESTED = "callback_requested"
    NO_RESPONSE = "no_response"
    USER_IDLE = "user_idle_max_duration_exceeded"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    CANCELED = "canceled"
    DIAL_FAILED = "dial_failed"


# Provider call status -> (run status, disposition). None disposition means
# "classify from the transcript".
TERMINAL_CALL_STATUSES: Dict[str, tuple] = {
    "completed": (CallRunStatus.COMPLETED, None),
    "busy": (CallRunStatus.FAILED, Disposition.BUSY),
    "failed": (CallRunStatus.FAILED, Disposition.FAILED),
    "no-answer": (CallRunStatus.FAILED, Disposition.NO_ANSWER),
    "canceled": (CallRunStatus.FAILED, Disposition.CANCELED),
}


def generate_run_number() -> str:
    """
    Human-readable run number.

    Format: WR-TEL-<last 6 digits of ms timestamp>-<4 random digits>
    """
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"WR-TEL-{timestamp}-{random.randint(1000, 9999)}"


class CallRun(BaseModel):
    """Stored call run (agent_runs table)"""
    id: str
    run_number: str
    agent_id: str
    tenant_id: Optional[str] = None
    campaign_id: Optional[str] = None
    contact_id: Optional[str] = None
    type: CallRunType = CallRunType.PHONE_CALL
    status: CallRunStatus = CallRunStatus.IN_PROGRESS
    phone_number: Optional[str] = None
    provider_call_id: Optional[str] = None
    transcript_text: Optional[str] = None
    transcript_turns: Optional[List[Dict[str, Any]]] = None
    duration_seconds: Optional[int] = None
    tokens_used: int = 0
    disposition: Optional[str] = None
    recording_url: Optional[str] = None
    recording_duration: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "extra": "ignore"}

    @property
    def is_terminal(self) -> bool:
        return self.status != CallRunStatus.IN_PROGRESS
