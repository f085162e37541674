import asyncio
import logging
import signal

from crawl_orchestrator.config import settings
from crawl_orchestrator.database import init_models
from crawl_orchestrator.services.scheduler import get_crawl_scheduler, scheduler, start_schedule

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await init_models()
    crawl_scheduler = get_crawl_scheduler()
    start_schedule(crawl_scheduler, settings.scheduler_cron)
    logger.info("Scheduler worker started with cron=%s", settings.scheduler_cron)

    # Catch up immediately instead of waiting for the first cron slot.
    await crawl_scheduler.tick()

    try:
        await stop_event.wait()
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        logger.info("Scheduler worker shutting down")


if __name__ == "__main__":
    asyncio.run(main())
