"""
This module contains the booking store: the queries and the status-guarded
writes that move bookings through their lifecycle.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DataIntegrityError
from .models import (
    Booking, BookingStatus, MessageKind, MessageLog, Route, TransitionOutcome, Trip,
    next_status, source_states,
)

logger = logging.getLogger(__name__)


async def lock_trip(session: AsyncSession, trip_id: int) -> bool:
    """
    Takes the per-trip write lock for the rest of the transaction.

    Bumping `lock_version` makes every other writer of the same trip wait
    until this transaction ends.

    Returns:
        bool: False if the trip no longer exists.
    """
    result = await session.execute(
        update(Trip)
        .where(Trip.id == trip_id)
        .values(lock_version=Trip.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def insert_hold(session: AsyncSession, *, trip: Trip, customer_phone: str,
                customer_name: Optional[str], seat_count: int, now: datetime,
                hold_duration: timedelta) -> Booking:
    """
    Adds a HOLD booking to the session. The caller commits.
    """
    booking = Booking(
        customer_name=customer_name,
        customer_phone=customer_phone,
        trip_id=trip.id,
        seat_count=seat_count,
        status=BookingStatus.HOLD,
        hold_expires_at=now + hold_duration,
        created_at=now,
    )
    session.add(booking)
    return booking


async def transition(session: AsyncSession, booking_id: int, target: BookingStatus,
                     **values) -> TransitionOutcome:
    """
    Moves a booking to `target` only if it is still in a state that allows it.

    The status check and the write happen in one UPDATE statement, so two
    writers racing on the same booking cannot both succeed.

    Args:
        session (AsyncSession): The session to write with. The caller commits.
        booking_id (int): The booking to move.
        target (BookingStatus): CONFIRMED or EXPIRED.
        **values: Extra columns to set together with the status.

    Returns:
        TransitionOutcome: APPLIED, ALREADY_TRANSITIONED or NOT_FOUND.
    """
    result = await session.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status.in_(source_states(target)))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return TransitionOutcome.APPLIED

    current = await session.scalar(select(Booking.status).where(Booking.id == booking_id))
    if current is None:
        return TransitionOutcome.NOT_FOUND
    if next_status(current, target) is None:
        logger.debug(f"Booking {booking_id} is already {current.value}, not moving to {target.value}")
    return TransitionOutcome.ALREADY_TRANSITIONED


async def get_booking(session: AsyncSession, booking_id: int) -> Optional[Booking]:
    """
    Reads a booking with its trip, route and attachment, bypassing stale identity map state.
    """
    return await session.scalar(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )


async def load_booking_context(session: AsyncSession, booking_id: int) -> Booking:
    """
    Reads a booking that must exist together with its trip and route.

    Raises:
        DataIntegrityError: If the booking, its trip or its route is missing.
    """
    booking = await get_booking(session, booking_id)
    if booking is None:
        raise DataIntegrityError(f"Booking {booking_id} not found")
    if booking.trip is None:
        raise DataIntegrityError(f"Trip {booking.trip_id} of booking {booking_id} not found")
    if booking.trip.route is None:
        raise DataIntegrityError(f"Route {booking.trip.route_id} of trip {booking.trip_id} not found")
    return booking


async def latest_hold_for_operator(session: AsyncSession, operator_id: int) -> Optional[Booking]:
    """
    The most recently created HOLD booking on any of the operator's trips.
    """
    return await session.scalar(
        select(Booking)
        .join(Trip, Booking.trip_id == Trip.id)
        .join(Route, Trip.route_id == Route.id)
        .where(Booking.status == BookingStatus.HOLD, Route.operator_id == operator_id)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .limit(1)
    )


async def stale_hold_ids(session: AsyncSession, now: datetime) -> list[int]:
    """
    Ids of HOLD bookings whose hold ended at or before `now`.
    """
    result = await session.scalars(
        select(Booking.id)
        .where(Booking.status == BookingStatus.HOLD, Booking.hold_expires_at <= now)
        .order_by(Booking.id)
    )
    return list(result)


def _has_log(kind: MessageKind):
    return exists().where(MessageLog.booking_id == Booking.id, MessageLog.kind == kind)


async def due_reminders(session: AsyncSession, now: datetime, lead: timedelta) -> list[Booking]:
    """
    CONFIRMED bookings departing within `lead` of `now` that have not had a reminder.
    """
    horizon = now + lead
    candidates = await session.scalars(
        select(Booking)
        .join(Trip, Booking.trip_id == Trip.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            Trip.journey_date >= now.date(),
            Trip.journey_date <= horizon.date(),
            ~_has_log(MessageKind.REMINDER),
        )
        .order_by(Trip.journey_date, Trip.departure_time, Booking.id)
    )
    return [booking for booking in candidates.unique()
            if now <= booking.trip.departs_at <= horizon]


async def has_message(session: AsyncSession, booking_id: int, kind: MessageKind) -> bool:
    return bool(await session.scalar(
        select(exists().where(MessageLog.booking_id == booking_id, MessageLog.kind == kind))
    ))


def record_message(session: AsyncSession, booking_id: Optional[int], kind: MessageKind,
                   recipient: Optional[str], now: datetime) -> MessageLog:
    """
    Appends a message log row to the session. The caller commits.
    """
    entry = MessageLog(booking_id=booking_id, kind=kind, recipient=recipient, sent_at=now)
    session.add(entry)
    return entry
