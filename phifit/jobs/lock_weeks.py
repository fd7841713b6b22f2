from __future__ import annotations
import asyncio
import structlog
from phifit.config import settings
from phifit.db import Database
from phifit.logging_setup import configure_logging
from phifit.services import weeks

log = structlog.get_logger()


async def _run(database: Database) -> weeks.SweepResult:
    async with database.session() as session:
        result = await weeks.sweep(session)
    for r in result.results:
        if r.errors:
            log.warning("week_lock_effects_incomplete", week_id=str(r.week_id), errors=r.errors)
    return result


async def main() -> weeks.SweepResult:
    database = Database(settings.database_url, pool_pre_ping=True)
    try:
        return await _run(database)
    finally:
        await database.dispose()


def lock_weeks() -> None:
    # scheduler entry point (sync); run the async sweep
    result = asyncio.run(main())
    log.info("lock_weeks_job_done", locked=result.locked, opened=result.opened)


if __name__ == "__main__":
    configure_logging()
    lock_weeks()
