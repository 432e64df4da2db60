"""Database initialization utilities."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

import app.models  # noqa: F401  (register all tables on Base.metadata)
from app.db.base import Base
from app.db.session import engine
from app.rules.loader import RulesetLoader
from app.services.scoring_rules import ScoringRuleService

logger = logging.getLogger(__name__)


async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def drop_tables() -> None:
    """Drop all database tables (use with caution)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Database tables dropped")


async def import_seed_rules(session: AsyncSession, loader: RulesetLoader | None = None) -> int:
    """Bind every seed file in /rulesets to its synced form.

    Seeds for forms that have not been synced yet are skipped.

    Returns:
        Number of rules set
    """
    loader = loader or RulesetLoader()
    service = ScoringRuleService(session)
    total = 0
    for filename in loader.list_rulesets():
        seed = loader.load(filename)
        outcome = await service.import_seed(seed)
        if outcome.unresolved:
            logger.warning(
                f"Seed {filename}: {len(outcome.unresolved)} entries not bound "
                f"({', '.join(outcome.unresolved[:5])})"
            )
        total += outcome.rules_set
    return total


async def init_db(session: AsyncSession, loader: RulesetLoader | None = None) -> None:
    """Initialize database with tables and seed scoring rules."""
    await create_tables()
    rules_set = await import_seed_rules(session, loader)
    logger.info(f"Database initialization complete ({rules_set} seed rules set)")
