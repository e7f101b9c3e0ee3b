"""
Inbox Relay API
FastAPI application that routes inbound email to Slack and forwarding targets.
"""

import logging
import os

from fastapi import FastAPI, HTTPException

from app.config import get_settings
from app.models.route import FALLBACK_KEY, parse_routing_table
from app.routers import email_intake

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Inbox Relay API",
    description="Inbound email routing to Slack notifications, file archives and forwarding",
    version="0.1.0",
)

# Include routers
app.include_router(email_intake.router, prefix="/api/email", tags=["email"])


@app.on_event("startup")
async def log_startup_config() -> None:
    """
    Log which delivery channels are configured so misconfiguration is obvious.

    Example output:

        Inbox Relay listening on port 8000
          Slack:      enabled
          Forwarding: smtp.example.com:25
          Miss policy: reject
    """
    settings = get_settings()
    host_port = os.getenv("HOST_PORT", "8000")
    forwarding = (
        f"{settings.smtp_host}:{settings.smtp_port}" if settings.smtp_host else "disabled"
    )
    logger.info(
        "Inbox Relay listening on port %s\n"
        "  Slack:       %s\n"
        "  Forwarding:  %s\n"
        "  Miss policy: %s",
        host_port,
        "enabled" if settings.slack_bot_token else "disabled (SLACK_BOT_TOKEN not set)",
        forwarding,
        settings.routing_miss_policy.value,
    )


@app.get("/")
async def root():
    return {"message": "Inbox Relay API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/routes")
async def health_routes():
    """
    Check that the routing table parses into at least one usable route.

    Returns 503 when ROUTES_JSON is missing, invalid, or has no valid entries.
    """
    settings = get_settings()
    table = parse_routing_table(
        settings.routes_json, default_channel=settings.slack_default_channel
    )
    if not table:
        raise HTTPException(
            status_code=503,
            detail="No valid routes configured (check ROUTES_JSON)",
        )

    return {
        "status": "ok",
        "routes": len(table),
        "fallback": FALLBACK_KEY in table,
        "miss_policy": settings.routing_miss_policy.value,
    }
