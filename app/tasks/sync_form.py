"""Sync a form definition and bind seed scoring rules to it.

Usage:
    python -m app.tasks.sync_form <form_id>
    python -m app.tasks.sync_form <form_id> --seed example-screening-v1.yaml

    # Environment variables:
    DATABASE_URL - PostgreSQL connection string
    TYPEFORM_API_KEY - provider personal access token
"""

import asyncio
import logging
import sys

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.rules.loader import RulesetLoader
from app.schemas.form import FormSyncResult
from app.services.form_sync import FormSyncService
from app.services.scoring_rules import ScoringRuleService, SeedImportResult
from app.services.typeform import TypeformClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_sync_form_task(
    form_id: str,
    seed_filename: str | None = None,
    database_url: str | None = None,
) -> tuple[FormSyncResult, SeedImportResult | None]:
    """Sync ``form_id`` and optionally import a seed file against it."""
    engine = create_async_engine(database_url or settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        async with async_session() as session:
            result = await FormSyncService(session, TypeformClient()).sync_form(form_id)
            logger.info(f"Form sync complete: {result.model_dump()}")

            seed_result = None
            if seed_filename:
                seed = RulesetLoader().load(seed_filename)
                seed_result = await ScoringRuleService(session).import_seed(seed)
            return result, seed_result
    finally:
        await engine.dispose()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Sync a form definition from the provider")
    parser.add_argument("form_id", help="Provider form id")
    parser.add_argument("--seed", default=None, help="Seed file under /rulesets to import")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (overrides DATABASE_URL env var)",
    )
    args = parser.parse_args()

    try:
        result, seed_result = asyncio.run(
            run_sync_form_task(args.form_id, args.seed, args.database_url)
        )
        print(
            f"Synced {result.form_id}: processed={result.fields_processed} "
            f"failed={result.fields_failed} deactivated={result.fields_deactivated}"
        )
        if seed_result is not None:
            print(f"Seed rules set: {seed_result.rules_set} unresolved: {seed_result.unresolved}")
        sys.exit(1 if result.fields_failed else 0)
    except Exception as e:
        logger.exception(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
