"""
This module contains the confirmation engine: a ticket sent by the operator confirms the latest hold.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from alchemical.aio import Alchemical

from .bookings import latest_hold_for_operator, load_booking_context, transition
from .models import (
    Booking, BookingStatus, MediaType, MessageKind, Operator, TicketAttachment, TransitionOutcome,
)
from .notifier import Notifier
from .whatsapp import Messenger, WhatsAppError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketMedia:
    media_id: str
    media_type: MediaType
    mime_type: Optional[str] = None
    url: Optional[str] = None


def confirmation_message(booking: Booking) -> str:
    trip, route = booking.trip, booking.trip.route
    return (
        "✅ Your booking is confirmed!\n\n"
        f"Booking ID: {booking.id}\n"
        f"Route: {route.label}\n"
        f"Date: {trip.journey_date:%Y-%m-%d}\n"
        f"Time: {trip.departure_time:%H:%M}\n"
        f"Seats: {booking.seat_count}\n"
        f"Price: ₹{route.price * booking.seat_count}\n\n"
        "Thank you for choosing us!"
    )


class ConfirmationEngine:
    """
    Confirms the operator's most recent HOLD when the operator sends a ticket.

    Args:
        db (Alchemical): The store handle.
        notifier (Notifier): Sends the customer confirmation and the operator acknowledgement.
        messenger (Messenger): Used to look up the ticket's download URL.
        clock (Callable): Source of the current time.
    """

    def __init__(self, db: Alchemical, notifier: Notifier, messenger: Messenger,
                 clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.notifier = notifier
        self.messenger = messenger
        self.clock = clock

    async def _media_url(self, media: TicketMedia) -> Optional[str]:
        if media.url:
            return media.url
        try:
            return await self.messenger.get_media_url(media.media_id)
        except WhatsAppError as exc:
            logger.error(f"Could not resolve URL of media {media.media_id}: {exc}")
            return None

    async def confirm_latest(self, operator: Operator, media: TicketMedia) -> Optional[Booking]:
        """
        Confirms the most recently created HOLD on the operator's trips.

        Args:
            operator (Operator): The operator who sent the ticket.
            media (TicketMedia): The received image or document.

        Returns:
            Booking or None: The confirmed booking, or None if there was no HOLD
            to confirm or another writer moved it first.
        """
        async with self.db.Session() as session:
            booking = await latest_hold_for_operator(session, operator.id)
        if booking is None:
            logger.info(f"Ticket {media.media_id} from operator {operator.id} ignored: no booking on hold")
            return None

        url = await self._media_url(media)
        now = self.clock()
        if booking.hold_expires_at is not None and booking.hold_expires_at <= now:
            logger.warning(f"Booking {booking.id} confirmed after its hold ended at {booking.hold_expires_at}")

        async with self.db.Session() as session:
            outcome = await transition(
                session, booking.id, BookingStatus.CONFIRMED,
                ticket_received_at=now, hold_expires_at=None,
            )
            if outcome is not TransitionOutcome.APPLIED:
                await session.rollback()
                logger.debug(f"Booking {booking.id} not confirmed: {outcome.value}")
                return None

            session.add(TicketAttachment(
                booking_id=booking.id,
                media_id=media.media_id,
                media_type=media.media_type,
                mime_type=media.mime_type,
                url=url,
                received_at=now,
            ))
            await session.commit()
            logger.info(f"Booking {booking.id} CONFIRMED with {media.media_type.value} {media.media_id}")

            booking = await load_booking_context(session, booking.id)

        await self.notifier.notify(booking.customer_phone, confirmation_message(booking),
                                   MessageKind.CONFIRMATION, booking.id)
        await self.notifier.notify(
            operator.phone_number,
            f"Booking {booking.id} has been confirmed and the customer has been notified.",
            MessageKind.OPERATOR_NOTIFICATION, booking.id,
        )
        return booking
