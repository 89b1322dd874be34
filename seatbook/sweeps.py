"""
This module contains the periodic sweeps: hold expiration and departure reminders.

Both sweeps may overlap with themselves and with inbound traffic, so every
write they make is either status-guarded or deduplicated by the message log.
"""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

from alchemical.aio import Alchemical

from .bookings import due_reminders, has_message, stale_hold_ids, transition
from .models import Booking, BookingStatus, MessageKind, TransitionOutcome
from .notifier import Notifier

logger = logging.getLogger(__name__)

ExpiryHook = Callable[[int], Awaitable[None]]


async def expire_stale_holds(db: Alchemical, now: Optional[datetime] = None,
                             on_expired: Iterable[ExpiryHook] = ()) -> list[int]:
    """
    Moves every HOLD whose hold has ended to EXPIRED, returning the seats to the trip.

    Args:
        db (Alchemical): The store handle.
        now (datetime): The sweep instant, defaults to the current time.
        on_expired (Iterable): Async hooks called with each expired booking id after commit.

    Returns:
        list[int]: Ids of the bookings this run expired.
    """
    now = now or datetime.now()
    expired = []
    async with db.Session() as session:
        for booking_id in await stale_hold_ids(session, now):
            outcome = await transition(session, booking_id, BookingStatus.EXPIRED, hold_expires_at=None)
            # One transaction per row.
            await session.commit()
            if outcome is TransitionOutcome.APPLIED:
                expired.append(booking_id)
            else:
                logger.debug(f"Booking {booking_id} skipped by expiry sweep: {outcome.value}")

    if expired:
        logger.info(f"Expired {len(expired)} hold(s): {expired}")

    hooks = list(on_expired)
    for booking_id in expired:
        for hook in hooks:
            try:
                await hook(booking_id)
            except Exception:
                logger.exception(f"Expiry hook {hook!r} failed for booking {booking_id}")
    return expired


def reminder_message(booking: Booking) -> str:
    trip, route = booking.trip, booking.trip.route
    return (
        f"Reminder: Your bus from {route.source} to {route.destination} departs at "
        f"{trip.departure_time:%H:%M} on {trip.journey_date:%Y-%m-%d}. "
        f"Booking ID: {booking.id}, seats: {booking.seat_count}. Safe journey!"
    )


async def send_departure_reminders(db: Alchemical, notifier: Notifier,
                                   now: Optional[datetime] = None,
                                   lead: timedelta = timedelta(hours=6)) -> list[int]:
    """
    Reminds customers of CONFIRMED bookings departing within `lead`, once per booking.

    The reminder log row is the deduplication mark and is written only after a
    successful send, so a crash in between can repeat a reminder on the next run.

    Returns:
        list[int]: Ids of the bookings reminded by this run.
    """
    now = now or datetime.now()
    async with db.Session() as session:
        bookings = await due_reminders(session, now, lead)

    reminded = []
    for booking in bookings:
        async with db.Session() as session:
            # An overlapping sweep may have reminded this booking since the selection ran.
            if await has_message(session, booking.id, MessageKind.REMINDER):
                continue
        if await notifier.notify(booking.customer_phone, reminder_message(booking),
                                 MessageKind.REMINDER, booking.id):
            reminded.append(booking.id)

    if reminded:
        logger.info(f"Sent {len(reminded)} departure reminder(s): {reminded}")
    return reminded
