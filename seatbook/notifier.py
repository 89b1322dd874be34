"""
This module contains the notifier that sends outbound messages after a state change has been committed.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from alchemical.aio import Alchemical

from .bookings import record_message
from .models import MessageKind
from .whatsapp import Messenger, WhatsAppError

logger = logging.getLogger(__name__)


class Notifier:
    """
    Sends a message and, only once the provider accepted it, appends a message log row.

    Sending is never part of a booking transaction: a failed send is logged and
    reported as False, and whatever state change preceded it stands.

    Args:
        db (Alchemical): The store handle the message log is written to.
        messenger (Messenger): The outbound channel.
        clock (Callable): Source of the current time.
    """

    def __init__(self, db: Alchemical, messenger: Messenger, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.messenger = messenger
        self.clock = clock

    async def notify(self, to: str, body: str, kind: MessageKind,
                     booking_id: Optional[int] = None) -> bool:
        """
        Sends `body` to `to` and logs it as `kind`.

        Returns:
            bool: True if the message was sent and logged.
        """
        try:
            await self.messenger.send_text(to, body)
        except WhatsAppError as exc:
            logger.error(f"Failed to send {kind.value} for booking {booking_id} to {to}: {exc}")
            return False

        async with self.db.Session() as session:
            record_message(session, booking_id, kind, to, self.clock())
            await session.commit()
        logger.info(f"Sent {kind.value} for booking {booking_id} to {to}")
        return True
