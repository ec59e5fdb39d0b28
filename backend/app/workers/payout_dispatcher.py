"""Resume interrupted settlements and retry failed prize credits."""

import logging

from app.config import settings
from app.services.league_orchestrator import league_orchestrator
from app.workers._state import set_synced

logger = logging.getLogger("phantacci.payout_dispatcher")

_STATE_KEY = "payout_dispatcher"


async def retry_payout_credits() -> None:
    resumed = await league_orchestrator.resume_unfinished_finalizations()
    if resumed:
        logger.info("Resumed settlement for %d finalized leagues", len(resumed))

    report = await league_orchestrator.retry_undelivered_credits(settings.PAYOUT_RETRY_BATCH)
    if report.credited or report.failed:
        logger.info(
            "Payout retry: %d credited, %d still failing",
            report.credited, report.failed,
        )
    await set_synced(_STATE_KEY)
