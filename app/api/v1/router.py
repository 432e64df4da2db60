"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import (
    applications,
    forms,
    health,
    scoring_rules,
    webhooks,
)

api_router = APIRouter()

# Health check
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["health"],
)

# Inbound webhooks
api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Form sync and versioned schema
api_router.include_router(
    forms.router,
    prefix="/forms",
    tags=["forms"],
)

# Scoring rules
api_router.include_router(
    scoring_rules.router,
    prefix="/scoring-rules",
    tags=["scoring-rules"],
)

# Applications
api_router.include_router(
    applications.router,
    prefix="/applications",
    tags=["applications"],
)
