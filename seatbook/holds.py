"""
This module contains the hold issuer, which turns a booking intent into a HOLD on seats.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from alchemical.aio import Alchemical
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import insert_hold, load_booking_context, lock_trip
from .config import Settings
from .errors import (
    AmbiguousRoute, DataIntegrityError, InsufficientSeats, QuotaBelowCommitted, RouteNotFound,
    TripNotFound,
)
from .ledger import seat_counts
from .models import Booking, MessageKind, Operator, Route, Trip
from .notifier import Notifier
from .parser import BookingIntent

logger = logging.getLogger(__name__)


class TripLocks:
    """
    One asyncio lock per trip id, shared by every writer in this process
    whose write depends on the trip's seat ledger.
    """

    def __init__(self):
        self._locks = defaultdict(asyncio.Lock)

    def for_trip(self, trip_id: int) -> asyncio.Lock:
        return self._locks[trip_id]


async def resolve_route(session: AsyncSession, source: str, destination: str) -> Route:
    """
    Finds the route whose source and destination contain the given names, ignoring case.

    Raises:
        RouteNotFound: If nothing matches.
        AmbiguousRoute: If several routes match and none of them matches exactly.
    """
    source_key, destination_key = source.strip().lower(), destination.strip().lower()
    routes = list(await session.scalars(
        select(Route)
        .where(func.lower(Route.source).contains(source_key, autoescape=True),
               func.lower(Route.destination).contains(destination_key, autoescape=True))
        .order_by(Route.id)
    ))
    if not routes:
        raise RouteNotFound(source, destination)
    if len(routes) == 1:
        return routes[0]

    exact = [route for route in routes
             if route.source.lower() == source_key and route.destination.lower() == destination_key]
    if len(exact) == 1:
        return exact[0]
    raise AmbiguousRoute(source, destination, [route.label for route in routes])


async def resolve_trip(session: AsyncSession, route: Route, intent: BookingIntent) -> Trip:
    trip = await session.scalar(
        select(Trip).where(
            Trip.route_id == route.id,
            Trip.journey_date == intent.journey_date,
            Trip.departure_time == intent.departure_time,
        )
    )
    if trip is None:
        raise TripNotFound(route.label, intent.journey_date, intent.departure_time)
    return trip


async def change_quota(db: Alchemical, locks: TripLocks, trip_id: int, seat_quota: int,
                       now: datetime) -> Optional[Trip]:
    """
    Sets a trip's WhatsApp seat quota, refusing to go below the seats already
    confirmed or held.

    Returns:
        Trip: The updated trip, or None if it does not exist.

    Raises:
        QuotaBelowCommitted: If confirmed plus active held seats exceed `seat_quota`.
    """
    async with locks.for_trip(trip_id):
        async with db.Session() as session:
            if not await lock_trip(session, trip_id):
                return None
            trip = await session.get(Trip, trip_id, populate_existing=True)
            counts = await seat_counts(session, trip, now)
            if seat_quota < counts.committed:
                await session.rollback()
                raise QuotaBelowCommitted(seat_quota, counts.committed)
            trip.seat_quota = seat_quota
            await session.commit()
            logger.info(f"Trip {trip_id} quota set to {seat_quota} ({counts.committed} committed)")
            return trip


def hold_message(booking: Booking) -> str:
    trip, route = booking.trip, booking.trip.route
    return (
        "Your seats are on hold!\n\n"
        f"Booking ID: {booking.id}\n"
        f"Route: {route.label}\n"
        f"Date: {trip.journey_date:%Y-%m-%d}\n"
        f"Time: {trip.departure_time:%H:%M}\n"
        f"Seats: {booking.seat_count}\n"
        f"Price: ₹{route.price * booking.seat_count}\n\n"
        f"The hold expires at {booking.hold_expires_at:%H:%M}. "
        "Your ticket will be sent to you here once it is issued."
    )


def operator_message(booking: Booking) -> str:
    trip, route = booking.trip, booking.trip.route
    customer = booking.customer_phone
    if booking.customer_name:
        customer = f"{booking.customer_name} ({booking.customer_phone})"
    return (
        "New booking hold!\n\n"
        f"Booking ID: {booking.id}\n"
        f"Customer: {customer}\n"
        f"Route: {route.label}\n"
        f"Date: {trip.journey_date:%Y-%m-%d}\n"
        f"Time: {trip.departure_time:%H:%M}\n"
        f"Seats: {booking.seat_count}\n"
        f"Price: ₹{route.price * booking.seat_count}\n"
        f"Hold expires: {booking.hold_expires_at:%H:%M}\n\n"
        "Issue the ticket and send the ticket image or PDF here to confirm."
    )


class HoldIssuer:
    """
    Places HOLD bookings without ever selling more seats than a trip's quota.

    The availability check and the insert run in one transaction while the
    trip is locked, both in-process and in the database.

    Args:
        db (Alchemical): The store handle.
        notifier (Notifier): Sends the hold and operator notifications after commit.
        settings (Settings): Source of the hold duration.
        locks (TripLocks): Per-trip locks shared with other ledger-dependent writers.
        clock (Callable): Source of the current time.
    """

    def __init__(self, db: Alchemical, notifier: Notifier, settings: Settings,
                 locks: Optional[TripLocks] = None, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.notifier = notifier
        self.hold_duration = settings.hold_duration
        self.locks = locks or TripLocks()
        self.clock = clock

    async def issue(self, intent: BookingIntent, customer_phone: str,
                    customer_name: Optional[str] = None) -> Booking:
        """
        Holds seats for a parsed booking intent.

        Args:
            intent (BookingIntent): Route, date, time and seat count.
            customer_phone (str): Normalized phone of the customer.
            customer_name (str): Optional profile name of the customer.

        Returns:
            Booking: The new HOLD booking, with trip and route loaded when it was announced.

        Raises:
            RouteNotFound, AmbiguousRoute, TripNotFound, InsufficientSeats: Input errors for the customer.
        """
        async with self.db.Session() as session:
            route = await resolve_route(session, intent.source, intent.destination)
            trip = await resolve_trip(session, route, intent)

        trip_id = trip.id
        async with self.locks.for_trip(trip_id):
            async with self.db.Session() as session:
                if not await lock_trip(session, trip_id):
                    raise DataIntegrityError(f"Trip {trip_id} disappeared while booking")
                trip = await session.get(Trip, trip_id, populate_existing=True)
                now = self.clock()
                counts = await seat_counts(session, trip, now)
                if counts.available < intent.seat_count:
                    # Rolling back expires `trip`; only plain values are read afterwards.
                    await session.rollback()
                    logger.info(
                        f"Trip {trip_id}: {intent.seat_count} seat(s) requested by {customer_phone}, "
                        f"{counts.available} available"
                    )
                    raise InsufficientSeats(intent.seat_count, max(counts.available, 0))

                booking = insert_hold(
                    session, trip=trip, customer_phone=customer_phone, customer_name=customer_name,
                    seat_count=intent.seat_count, now=now, hold_duration=self.hold_duration,
                )
                await session.commit()
                logger.info(
                    f"Booking {booking.id} HOLD: trip {trip_id}, {booking.seat_count} seat(s) "
                    f"until {booking.hold_expires_at:%H:%M:%S}"
                )

        # The hold is committed; announcing it can fail without undoing it.
        try:
            return await self._announce(booking.id)
        except (DataIntegrityError, SQLAlchemyError):
            logger.exception(f"Booking {booking.id} is on hold but could not be announced")
            return booking

    async def _announce(self, booking_id: int) -> Booking:
        async with self.db.Session() as session:
            booking = await load_booking_context(session, booking_id)
            operator = await session.get(Operator, booking.trip.route.operator_id)

        await self.notifier.notify(booking.customer_phone, hold_message(booking),
                                   MessageKind.HOLD_NOTIFICATION, booking.id)
        if operator is None:
            logger.error(f"Operator {booking.trip.route.operator_id} not found, booking {booking.id} not announced")
        else:
            await self.notifier.notify(operator.phone_number, operator_message(booking),
                                       MessageKind.OPERATOR_NOTIFICATION, booking.id)
        return booking
