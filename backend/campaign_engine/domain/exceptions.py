"""
Campaign Engine Exceptions
Error taxonomy shared by services, the worker and the API layer
"""
from typing import Any, Dict, Optional


class CampaignEngineError(Exception):
    """Base class for all engine errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(CampaignEngineError):
    """Campaign, contact, run or tenant is absent or not owned by the caller"""
    pass


class PreconditionFailedError(CampaignEngineError):
    """Invalid state transition, e.g. starting an already-running campaign"""
    pass


class ConfigMissingError(CampaignEngineError):
    """No telephony credentials configured for the tenant"""
    pass


class QuotaExceededError(CampaignEngineError):
    """Usage gate denied the operation"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 upgrade_suggestion: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.upgrade_suggestion = upgrade_suggestion


class ProviderFailureError(CampaignEngineError):
    """Telephony or generative provider call failed"""
    pass


class TransientQueueError(CampaignEngineError):
    """Job execution threw; the queue's retry policy applies"""
    pass


class QueueUnavailableError(CampaignEngineError):
    """Queue broker cannot be reached"""
    pass


# Errors that must never be retried by the queue
PERMANENT_ERRORS = (
    NotFoundError,
    PreconditionFailedError,
    ConfigMissingError,
    QuotaExceededError,
)
