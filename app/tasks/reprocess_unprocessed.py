"""Scheduled task for re-processing submissions stuck behind old locks.

A delivery that crashed mid-pipeline leaves its processing lock behind. This
job finds locks older than the unprocessed threshold (3 minutes by default),
maps them back to their applications and re-runs ingestion and scoring from
the stored payload, releasing each lock afterwards.

Usage:
    # Run directly
    python -m app.tasks.reprocess_unprocessed

    # Or via cron (every 5 minutes)
    */5 * * * * cd /path/to/project && python -m app.tasks.reprocess_unprocessed

    # Environment variables:
    DATABASE_URL - PostgreSQL connection string
"""

import asyncio
import logging
import os
import sys
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.services.crm import get_crm_client
from app.services.intake import UnprocessedSweep, WebhookIntakeService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_reprocess_unprocessed_task(
    database_url: str | None = None,
    limit: int = 10,
) -> UnprocessedSweep:
    """Re-process up to ``limit`` stuck applications.

    Args:
        database_url: Database connection string. Defaults to settings.
        limit: Maximum applications handled per run

    Returns:
        Sweep summary with processed and failed application ids
    """
    db_url = database_url or settings.database_url

    # Convert sync URL to async if needed
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    logger.info(f"Starting unprocessed sweep at {datetime.now().isoformat()}")

    engine = create_async_engine(db_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with async_session() as session:
            service = WebhookIntakeService(session, crm_client=get_crm_client())
            sweep = await service.reprocess_unprocessed(limit=limit)
            logger.info(
                f"Unprocessed sweep complete: processed={len(sweep.pending)} "
                f"failed={len(sweep.failed)}"
            )
            return sweep
    finally:
        await engine.dispose()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Re-process submissions stuck behind old locks")
    parser.add_argument(
        "--limit",
        type=int,
        default=int(os.getenv("REPROCESS_LIMIT", "10")),
        help="Maximum applications to re-process per run",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (overrides DATABASE_URL env var)",
    )
    args = parser.parse_args()

    try:
        sweep = asyncio.run(
            run_reprocess_unprocessed_task(
                database_url=args.database_url,
                limit=args.limit,
            )
        )
        print(f"Job completed: processed={sweep.pending} failed={sweep.failed}")
        sys.exit(1 if sweep.failed else 0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
