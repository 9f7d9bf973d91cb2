import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv

from packages.nebula.config import Settings
from packages.nebula.pipeline import BatchRunner, BatchSummary
from packages.nebula.repository import CleanupResult
from packages.nebula.services import Services, build_services


logger = logging.getLogger(__name__)


async def process_sites_once(runner: BatchRunner) -> BatchSummary:
    """Run the pipeline once for every active site."""
    summary = await runner.run_batch()
    logger.info(
        "Nightly run complete: %s sites, %s successful, %s failed",
        summary.total,
        summary.successful,
        summary.failed,
    )
    return summary


def cleanup_expired(services: Services) -> CleanupResult:
    return services.store.cleanup(services.settings.retention_days)


async def worker_loop(services: Services, *, iterations: Optional[int] = None) -> None:
    """
    Every `worker_interval_seconds`, process all active sites and then prune
    data older than the retention window.

    `iterations` bounds the loop; None runs forever.
    """
    runner = BatchRunner(services)
    interval = services.settings.worker_interval_seconds
    logger.info("Starting Nebula worker loop (interval=%ss)", interval)
    completed = 0
    while iterations is None or completed < iterations:
        try:
            await process_sites_once(runner)
        except Exception:
            logger.exception("Nightly run failed")
        try:
            cleanup_expired(services)
        except Exception:
            logger.exception("Retention cleanup failed")
        completed += 1
        if iterations is None or completed < iterations:
            await asyncio.sleep(interval)


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    asyncio.run(worker_loop(build_services(settings)))


if __name__ == "__main__":
    main()
