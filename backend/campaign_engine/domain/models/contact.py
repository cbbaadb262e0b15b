"""
Contact Domain Models
One dial target within a campaign
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum
import re


class ContactStatus(str, Enum):
    """Contact status - moves from pending to called/failed by the worker"""
    PENDING = "pending"
    CALLED = "called"
    FAILED = "failed"


class Contact(BaseModel):
    """Stored contact row (campaign_contacts table)"""
    id: str
    campaign_id: str
    phone_number: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: ContactStatus = ContactStatus.PENDING
    agent_run_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "extra": "ignore"}


class ContactInput(BaseModel):
    """A parsed source row, before it is stored"""
    phone_number: str = Field(..., description="Phone number in any format (normalized on load)")
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        cleaned = re.sub(r'[\s\-\(\)\.]', '', v or '')
        if not cleaned:
            raise ValueError('Phone number cannot be empty')
        return v.strip()
