"""
This module contains the Celery worker and the periodic sweep tasks for the seat booking service.
"""
import logging

import anyio
from celery import Celery, Task

from .config import configure_logging, get_settings
from .db import create_store
from .notifier import Notifier
from .sweeps import expire_stale_holds, send_departure_reminders
from .whatsapp import WhatsAppClient

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

# Configure logging
logger = logging.getLogger(__name__)

app = Celery('seatbook',
             broker=settings.CELERY_BROKER_URL,
             backend=settings.CELERY_RESULT_BACKEND,
             include=["seatbook.worker"])

app.conf.beat_schedule = {
    "expire-stale-holds": {
        "task": "seatbook.worker.expire_stale_holds_task",
        "schedule": settings.EXPIRY_SWEEP_MINUTES * 60.0,
    },
    "send-departure-reminders": {
        "task": "seatbook.worker.send_departure_reminders_task",
        "schedule": settings.REMINDER_SWEEP_MINUTES * 60.0,
    },
}


class BaseTaskWithRetry(Task):
    """
    Base task with automatic retry mechanism. Sweeps are idempotent, so a retry
    never applies a transition twice.
    """
    autoretry_for = (Exception,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True


async def _expire_stale_holds():
    """
    Helper function to run the hold expiration sweep against the configured store.
    """
    db = create_store(settings.DATABASE_URL)
    try:
        return await expire_stale_holds(db)
    finally:
        await db.get_engine().dispose()


@app.task(bind=True, base=BaseTaskWithRetry)
def expire_stale_holds_task(self):
    """
    Celery task that expires every HOLD whose hold time has passed.

    Returns:
        list[int]: The ids of the expired bookings.
    """
    logger.info(f"{type(self)} -- Sweeping stale holds")
    expired = anyio.run(_expire_stale_holds)
    logger.info(f"Expired bookings: {expired}")
    return expired


async def _send_departure_reminders():
    """
    Helper function to send reminders for confirmed bookings departing soon.
    """
    db = create_store(settings.DATABASE_URL)
    messenger = WhatsAppClient(settings)
    try:
        notifier = Notifier(db, messenger)
        return await send_departure_reminders(db, notifier, lead=settings.reminder_lead)
    finally:
        await messenger.aclose()
        await db.get_engine().dispose()


@app.task(bind=True, base=BaseTaskWithRetry)
def send_departure_reminders_task(self):
    """
    Celery task that reminds customers shortly before departure, once per booking.

    Returns:
        list[int]: The ids of the reminded bookings.
    """
    logger.info(f"{type(self)} -- Sending departure reminders")
    reminded = anyio.run(_send_departure_reminders)
    logger.info(f"Reminded bookings: {reminded}")
    return reminded
