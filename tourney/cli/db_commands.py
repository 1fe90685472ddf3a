"""
Database CLI Commands

init-db and a one-shot timeout sweep.
"""
import asyncio
import logging

from tourney.config.settings import settings
from tourney.database import create_engine_for, create_session_factory, init_db
from tourney.engine import build_engine
from tourney.tasks.timeout_scheduler import TimeoutScheduler

logger = logging.getLogger(__name__)


class DbCommand:
    """Create missing tables."""

    def execute(self, args) -> int:
        url = getattr(args, "database_url", None) or settings.database_url
        print("=== Database Init ===")
        asyncio.run(self._init(url))
        print(f"✓ Tables ready on {url}")
        return 0

    async def _init(self, url: str) -> None:
        bind = create_engine_for(url)
        try:
            await init_db(bind)
        finally:
            await bind.dispose()


class SweepCommand:
    """Run one TimeoutScheduler sweep."""

    def execute(self, args) -> int:
        url = getattr(args, "database_url", None) or settings.database_url
        counts = asyncio.run(self._sweep(url))
        print("=== Sweep ===")
        for key, value in counts.items():
            print(f"{key:<15} {value}")
        return 0 if counts.get("errors", 0) == 0 else 2

    async def _sweep(self, url: str) -> dict:
        bind = create_engine_for(url)
        try:
            scheduler = TimeoutScheduler(build_engine(), create_session_factory(bind))
            return await scheduler.run_once()
        finally:
            await bind.dispose()
