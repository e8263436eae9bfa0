"""ARQ worker for fulfillment background jobs.

Run with: arq services.fulfillment_service.worker.WorkerSettings
"""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_retry_failed_payouts(ctx: dict):
    from services.fulfillment_service.tasks import retry_failed_payouts

    logger.info("Running: retry_failed_payouts")
    return await retry_failed_payouts()


class WorkerSettings:
    redis_settings = get_redis_settings()
    on_startup = startup

    functions = [task_retry_failed_payouts]

    cron_jobs = [
        cron(
            task_retry_failed_payouts,
            minute={0, 10, 20, 30, 40, 50},
            run_at_startup=True,
        ),
    ]
