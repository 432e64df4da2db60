"""FastAPI application entry point.

``create_app`` wires the v1 API, error handling and the lifespan. At startup
the lifespan:
- creates tables and binds seed rules when ``init_db_on_startup`` is set,
  otherwise only validates the seed files
- builds the CRM client once and keeps it on ``app.state``
- logs which optional integrations are active
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import yaml
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.logging import setup_logging
from app.db.init_db import init_db
from app.db.session import AsyncSessionLocal, engine
from app.rules.loader import RulesetLoader, SeedError
from app.services.crm import get_crm_client

setup_logging()
logger = logging.getLogger(__name__)

SERVICE_NAME = "Applicant Screening API"
SERVICE_VERSION = "0.1.0"


def load_seeds(loader: RulesetLoader) -> dict[str, str]:
    """Parse every seed file; returns seed id -> content hash.

    A seed that fails to parse is logged and left out.
    """
    loaded: dict[str, str] = {}
    for filename in loader.list_rulesets():
        try:
            seed = loader.load(filename)
        except (SeedError, yaml.YAMLError) as e:
            logger.error(f"Seed {filename} is invalid: {e}")
            continue
        loaded[seed.id] = seed.hash
        logger.info(
            f"Seed {seed.id} v{seed.version}: {len(seed.rules)} rules for form "
            f"{seed.form_id} (hash {seed.hash[:12]})"
        )
    return loaded


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: seeds, CRM client and integration report. Shutdown: dispose the engine."""
    logger.info(f"Starting {SERVICE_NAME} (env={settings.env})")

    loader = RulesetLoader()
    app.state.ruleset_loader = loader
    if settings.init_db_on_startup and not settings.is_prod:
        logger.info("Initializing database and binding seed rules...")
        async with AsyncSessionLocal() as session:
            await init_db(session, loader)
    app.state.seeds = load_seeds(loader)

    crm_client = get_crm_client()
    app.state.crm_client = crm_client
    logger.info(
        f"CRM sync {'enabled' if crm_client.enabled else 'disabled'}; "
        f"webhook signatures {'verified' if settings.typeform_webhook_secret else 'not verified'}; "
        f"scheduled jobs {'enabled' if settings.cron_secure_key else 'disabled'}"
    )

    yield

    await engine.dispose()
    logger.info(f"Shut down {SERVICE_NAME}")


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions; hide their text outside dev and test."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    if settings.is_prod:
        detail = "Internal server error"
    else:
        detail = str(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": detail},
    )


async def root() -> dict:
    """Service info."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "docs": "/docs" if settings.is_dev else "Disabled in production",
    }


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title=SERVICE_NAME,
        description="Typeform intake, versioned form schemas and red/yellow/green applicant scoring",
        version=SERVICE_VERSION,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # Admin UI runs on a separate origin in development
    if settings.is_dev:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:3000"],
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["Authorization", "Content-Type"],
        )

    application.add_exception_handler(Exception, global_exception_handler)
    application.include_router(api_router, prefix="/api/v1")
    application.add_api_route("/", root, methods=["GET"], include_in_schema=False)
    return application


app = create_app()
