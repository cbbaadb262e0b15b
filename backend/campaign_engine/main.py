"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from campaign_engine.api.v1.dependencies import get_config, get_supabase
from campaign_engine.api.v1.routes import api_router
from campaign_engine.core.config import get_settings
from campaign_engine.core.tenant_middleware import TenantMiddleware
from campaign_engine.domain.exceptions import QueueUnavailableError
from campaign_engine.domain.services.call_conversation_engine import CallConversationEngine
from campaign_engine.domain.services.queue_service import CampaignQueueService
from campaign_engine.domain.services.usage_ledger import UsageLedger
from campaign_engine.domain.services.usage_recorder import UsageRecorder
from campaign_engine.infrastructure.llm.groq import GroqLLMProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Connects the campaign queue (Redis)
    - Starts the background usage recorder
    - Builds the call conversation engine (Supabase + Groq)

    Shutdown:
    - Drains pending usage records
    - Closes the Redis connection
    """
    # ========================
    # STARTUP
    # ========================
    logger.info("Starting Campaign Engine...")

    settings = get_settings()
    config = get_config()
    strict_validation = settings.environment == "production"

    queue_service = CampaignQueueService(config=config)
    try:
        await queue_service.initialize()
    except QueueUnavailableError as e:
        if strict_validation:
            logger.error(f"Startup failed: {e}")
            raise
        logger.warning(f"Queue broker unavailable (non-fatal in {settings.environment}): {e}")
    app.state.queue_service = queue_service

    usage_recorder = None
    llm = None
    try:
        supabase = get_supabase()
        ledger = UsageLedger(supabase, config)
        usage_recorder = UsageRecorder(ledger, maxsize=int(config.get("usage.recorder_queue_size", 1000)))
        usage_recorder.start()

        llm = GroqLLMProvider()
        await llm.initialize(config.get_provider_config("llm"))

        app.state.usage_recorder = usage_recorder
        app.state.conversation_engine = CallConversationEngine(
            supabase, llm, usage_ledger=ledger, usage_recorder=usage_recorder, config=config
        )
    except (RuntimeError, ValueError) as e:
        if strict_validation:
            logger.error(f"Startup failed: {e}")
            raise
        logger.warning(f"Configuration warnings (non-fatal in {settings.environment}): {e}")

    logger.info("Campaign Engine started successfully")

    yield  # Application is running

    # ========================
    # SHUTDOWN
    # ========================
    logger.info("Shutting down Campaign Engine...")

    try:
        if usage_recorder:
            await usage_recorder.stop()
        if llm:
            await llm.cleanup()
        await queue_service.close()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("Campaign Engine shutdown complete")


app = FastAPI(
    title="Campaign Engine",
    description="Outbound AI voice call campaigns",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# MULTI-TENANT: tenant_id from the bearer token
app.add_middleware(TenantMiddleware)

# Include API routes
app.include_router(api_router, prefix=get_settings().api_prefix)


@app.get("/")
async def root():
    return {"message": "Campaign Engine API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Reports queue broker connectivity and job counts; 503 when the broker
    is unreachable.
    """
    health = {"status": "healthy"}

    queue_service = getattr(app.state, "queue_service", None)
    if queue_service is None or not await queue_service.ping():
        health["status"] = "unhealthy"
        health["queue"] = "unavailable"
        return JSONResponse(status_code=503, content=health)

    health["queue"] = "connected"
    try:
        health["jobs"] = await queue_service.get_counts()
    except Exception as e:
        health["jobs"] = f"error: {str(e)}"

    recorder = getattr(app.state, "usage_recorder", None)
    if recorder is not None:
        health["usage_recorder"] = recorder.get_stats()

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
