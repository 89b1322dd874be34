"""
This module contains the seat ledger: seat availability derived from bookings.

Nothing here writes. Callers that act on the numbers must read them in the
same session and transaction as the write they guard.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Booking, BookingStatus, Trip


@dataclass(frozen=True)
class SeatCounts:
    quota: int
    confirmed: int
    held: int

    @property
    def committed(self) -> int:
        return self.confirmed + self.held

    @property
    def available(self) -> int:
        return self.quota - self.committed


def _count_columns(now: datetime):
    confirmed = func.coalesce(func.sum(case(
        (Booking.status == BookingStatus.CONFIRMED, Booking.seat_count),
        else_=0,
    )), 0)
    held = func.coalesce(func.sum(case(
        (and_(Booking.status == BookingStatus.HOLD, Booking.hold_expires_at > now),
         Booking.seat_count),
        else_=0,
    )), 0)
    return confirmed.label("confirmed"), held.label("held")


async def seat_counts(session: AsyncSession, trip: Trip, now: datetime) -> SeatCounts:
    """
    Counts confirmed seats and seats under an unexpired hold for a trip.

    Args:
        session (AsyncSession): The session the dependent write will use.
        trip (Trip): The trip whose quota applies.
        now (datetime): Holds expiring at or before this instant no longer count.

    Returns:
        SeatCounts: Quota, confirmed and held seats.
    """
    confirmed, held = _count_columns(now)
    row = (await session.execute(
        select(confirmed, held).where(Booking.trip_id == trip.id)
    )).one()
    return SeatCounts(quota=trip.seat_quota, confirmed=int(row.confirmed), held=int(row.held))


async def trip_stats(session: AsyncSession, trips: Iterable[Trip], now: datetime) -> dict[int, SeatCounts]:
    """
    Seat counts for several trips in one query, keyed by trip id.
    """
    trips = list(trips)
    if not trips:
        return {}
    confirmed, held = _count_columns(now)
    rows = (await session.execute(
        select(Booking.trip_id, confirmed, held)
        .where(Booking.trip_id.in_([trip.id for trip in trips]))
        .group_by(Booking.trip_id)
    )).all()
    by_trip = {row.trip_id: row for row in rows}

    stats = {}
    for trip in trips:
        row = by_trip.get(trip.id)
        stats[trip.id] = SeatCounts(
            quota=trip.seat_quota,
            confirmed=int(row.confirmed) if row else 0,
            held=int(row.held) if row else 0,
        )
    return stats
