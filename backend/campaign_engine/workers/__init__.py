"""
Workers Package
Background worker that dials campaign contacts
"""
from campaign_engine.workers.campaign_worker import CampaignWorker

__all__ = [
    "CampaignWorker"
]
