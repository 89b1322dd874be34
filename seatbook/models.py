"""
This module contains the data models and the booking state machine for the seat booking service.
"""
import enum
from datetime import datetime
from typing import Optional

from alchemical import Model
from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .errors import IllegalTransition


class BookingStatus(str, enum.Enum):
    """
    Lifecycle of a booking. A booking is born in HOLD and ends in exactly one
    of the terminal states.
    """
    HOLD = "HOLD"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self not in LEGAL_TRANSITIONS


LEGAL_TRANSITIONS = {
    BookingStatus.HOLD: frozenset({BookingStatus.CONFIRMED, BookingStatus.EXPIRED}),
}


def source_states(target: BookingStatus) -> list[BookingStatus]:
    """
    The statuses a booking may be in for a move to `target` to be legal.
    """
    sources = [state for state, targets in LEGAL_TRANSITIONS.items() if target in targets]
    if not sources:
        raise IllegalTransition(f"No transition leads to {target.value}")
    return sources


def next_status(current: BookingStatus, target: BookingStatus) -> Optional[BookingStatus]:
    """
    Applies a transition to a status snapshot.

    Returns the new status, or None when the snapshot has already left HOLD
    (a concurrent writer got there first). Asking for a target that no state
    can reach, such as HOLD, is a programming error.
    """
    if current in source_states(target):
        return target
    return None


class TransitionOutcome(enum.Enum):
    APPLIED = "applied"
    ALREADY_TRANSITIONED = "already_transitioned"
    NOT_FOUND = "not_found"


class MessageKind(str, enum.Enum):
    HOLD_NOTIFICATION = "hold_notification"
    OPERATOR_NOTIFICATION = "operator_notification"
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    REJECTION = "rejection"
    HELP = "help"


class MediaType(str, enum.Enum):
    IMAGE = "image"
    DOCUMENT = "document"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Operator(Model):
    """
    The bus operator that controls the WhatsApp channel.

    Attributes:
        id (int): The primary key of the operator.
        name (str): Display name.
        phone_number (str): Normalized WhatsApp number, used to recognise operator messages.
        approved (bool): Whether the operator is approved to sell on the channel.
    """
    __tablename__ = "operators"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    phone_number = Column(String, nullable=False, unique=True)
    approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class Route(Model):
    """
    A source to destination template with a per-seat price.
    """
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True)
    operator_id = Column(Integer, ForeignKey("operators.id", ondelete="CASCADE"), nullable=False)
    source = Column(String, nullable=False)
    destination = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    operator = relationship("Operator", lazy="joined")

    @property
    def label(self) -> str:
        return f"{self.source} → {self.destination}"


class Trip(Model):
    """
    A concrete departure of a route with the seat quota sold over WhatsApp.

    `lock_version` is bumped by every write that depends on the seat ledger so
    that such writes are serialized per trip.
    """
    __tablename__ = "trips"
    __table_args__ = (
        UniqueConstraint("route_id", "journey_date", "departure_time", name="uq_trip_departure"),
    )

    id = Column(Integer, primary_key=True)
    route_id = Column(Integer, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False)
    journey_date = Column(Date, nullable=False)
    departure_time = Column(Time, nullable=False)
    seat_quota = Column(Integer, nullable=False)
    lock_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    route = relationship("Route", lazy="joined")
    bookings = relationship("Booking", back_populates="trip", lazy="raise",
                            order_by="Booking.created_at")

    @property
    def departs_at(self) -> datetime:
        return datetime.combine(self.journey_date, self.departure_time)


class Booking(Model):
    """
    A customer's request for seats on a trip.

    Attributes:
        id (int): The primary key of the booking.
        customer_name (str): Name from the customer's WhatsApp profile, if any.
        customer_phone (str): Normalized WhatsApp number of the customer.
        trip_id (int): The trip the seats are on.
        seat_count (int): Number of seats requested.
        status (BookingStatus): HOLD, CONFIRMED or EXPIRED.
        hold_expires_at (datetime): End of the hold, only set while HOLD.
        ticket_received_at (datetime): When the operator's ticket arrived, only set once CONFIRMED.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    customer_name = Column(String)
    customer_phone = Column(String, nullable=False, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False)
    seat_count = Column(Integer, nullable=False, default=1)
    status = Column(Enum(BookingStatus, native_enum=False, length=16,
                         values_callable=_enum_values),
                    nullable=False, default=BookingStatus.HOLD, index=True)
    hold_expires_at = Column(DateTime)
    ticket_received_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    trip = relationship("Trip", back_populates="bookings", lazy="joined")
    attachment = relationship("TicketAttachment", back_populates="booking",
                              uselist=False, lazy="joined")


class TicketAttachment(Model):
    """
    The ticket image or document the operator sent to confirm a booking.
    """
    __tablename__ = "ticket_attachments"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    media_id = Column(String, nullable=False)
    media_type = Column(Enum(MediaType, native_enum=False, length=16,
                             values_callable=_enum_values), nullable=False)
    mime_type = Column(String)
    url = Column(String)
    received_at = Column(DateTime, nullable=False)

    booking = relationship("Booking", back_populates="attachment")


class MessageLog(Model):
    """
    Append-only record of every outbound message that was delivered to the provider.
    """
    __tablename__ = "message_logs"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    kind = Column(Enum(MessageKind, native_enum=False, length=32,
                       values_callable=_enum_values), nullable=False)
    recipient = Column(String)
    sent_at = Column(DateTime, nullable=False, default=datetime.now)
