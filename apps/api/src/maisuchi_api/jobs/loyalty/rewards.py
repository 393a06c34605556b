"""Housekeeping for the reward catalog."""

# meta: job: loyalty-reward-archival

from __future__ import annotations

from typing import Dict

from loguru import logger

from maisuchi_api.jobs.sessions import SessionFactory, open_session
from maisuchi_api.services.loyalty import RewardCatalog


async def archive_expired_rewards(*, session_factory: SessionFactory) -> Dict[str, int]:
    """Deactivate rewards whose `valid_until` has passed."""

    session = await open_session(session_factory)
    async with session as managed_session:
        catalog = RewardCatalog(managed_session)
        archived = await catalog.archive_expired()
        await catalog.commit()

    summary = {"archived": archived}
    logger.bind(summary=summary).info("Expired loyalty rewards archived")
    return summary
