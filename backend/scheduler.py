# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from clinicbot.config.settings import settings
from clinicbot.jobs.session_expiry_job import expire_idle_sessions
from clinicbot.models.conversation import utcnow
from clinicbot.services.db_service import create_mongo_client
from clinicbot.services.session_store import SessionStore
from clinicbot.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")

SESSION_EXPIRY_INTERVAL_MINUTES = 10


async def main():
    setup_logging()
    mongo_client = create_mongo_client(settings)
    session_store = SessionStore(mongo_client.get_default_database(), settings)

    scheduler = AsyncIOScheduler(timezone=settings.clinic_timezone)

    async def run_session_expiry_job():
        logger.info("Starting scheduled idle session expiry...")
        try:
            await expire_idle_sessions(session_store, utcnow())
        except Exception as e:
            logger.error(f"Idle session expiry failed: {e}", exc_info=True)

    scheduler.add_job(
        run_session_expiry_job,
        'interval',
        minutes=SESSION_EXPIRY_INTERVAL_MINUTES,
        id="session_expiry_job",
        replace_existing=True
    )
    logger.info(f"Scheduled job: session_expiry_job (every {SESSION_EXPIRY_INTERVAL_MINUTES} minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        mongo_client.close()

if __name__ == "__main__":
    asyncio.run(main())
