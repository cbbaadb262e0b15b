"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from campaign_engine.api.v1.endpoints import (
    campaigns,
    webhooks,
    usage,
)

api_router = APIRouter()

api_router.include_router(campaigns.router)
api_router.include_router(webhooks.router)
api_router.include_router(usage.router)
