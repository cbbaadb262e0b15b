"""
Campaign Domain Models
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum


class CampaignState(str, Enum):
    """Campaign lifecycle state"""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


TERMINAL_STATES = (CampaignState.STOPPED, CampaignState.COMPLETED)


class Campaign(BaseModel):
    """Batch outbound-calling job over a contact list, bound to one agent"""
    id: str
    tenant_id: str
    agent_id: str
    name: Optional[str] = None
    source_type: str = "csv"
    source_description: Optional[str] = None
    state: CampaignState = CampaignState.CREATED
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "extra": "ignore"}

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
