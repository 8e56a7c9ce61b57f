import asyncio
import logging
import os
import sys
import uuid

# Configure logging FIRST (before any other imports that may log)
from app.core.logging_config import setup_logging
setup_logging()

import config
import database
import migrations
import queue_notifier
import sms_service
from app.services.queue_notifications.exceptions import QueueFetchError

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
# - component        (worker / scanner / dispatcher / sms)
# - operation        (what is happening)
# - correlation_id   (one per scan)
# - outcome          (success | degraded | failed | skipped)
# - duration_ms      (iteration end)
# - reason           (short, non-PII explanation)
#
# Failure taxonomy: infra_error, dependency_error, domain_error, unexpected_error
#
# SECURITY: no secrets, no full phone numbers, no message payloads at INFO.
# ====================================================================================

logger = logging.getLogger(__name__)


async def main() -> int:
    instance_id = os.getenv("INSTANCE_ID", str(uuid.uuid4()))
    logger.info(
        "QUEUE_NOTIFIER_STARTED pid=%s instance_id=%s env=%s mode=%s",
        os.getpid(), instance_id, config.APP_ENV.upper(), config.RUN_MODE
    )

    problems = config.validate_config()
    if problems:
        for problem in problems:
            logger.critical(f"CONFIG_ERROR: {problem}")
        return 1

    logger.info(f"Using DATABASE_URL from {config.APP_ENV.upper()}_DATABASE_URL")

    try:
        pool = await database.get_pool()
    except Exception as e:
        logger.critical(f"DB_POOL_INIT_FAILED: {type(e).__name__}: {e}")
        return 1

    try:
        if config.RUN_MIGRATIONS and not await migrations.run_migrations_safe(pool):
            logger.critical("Migrations failed - refusing to scan against an unknown schema")
            return 1

        store = database.QueueStore(pool)
        messenger = sms_service.build_sms_client()

        if config.RUN_MODE == "loop":
            await queue_notifier.queue_notifier_task(
                store,
                messenger,
                interval_seconds=config.QUEUE_POLL_INTERVAL_SECONDS,
                iteration_timeout=config.QUEUE_ITERATION_TIMEOUT_SECONDS,
            )
            return 0

        try:
            await queue_notifier.run_queue_notifier_once(store, messenger)
        except QueueFetchError:
            logger.critical("Queue scan aborted: candidate fetch failed")
            return 1
        return 0
    finally:
        await database.close_pool()


def run():
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Queue notifier stopped")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
