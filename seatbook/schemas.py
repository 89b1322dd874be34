"""
This module contains the request and response models of the management API.
"""
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import BookingStatus, MediaType


class RouteCommand(BaseModel):
    """
    Represents the command for creating a route.

    Attributes:
        source (str): Where the bus leaves from.
        destination (str): Where the bus goes.
        price (Decimal): Price per seat.
    """
    source: str = Field(..., min_length=2, description="Where the bus leaves from")
    destination: str = Field(..., min_length=2, description="Where the bus goes")
    price: Decimal = Field(..., gt=0, description="Price per seat")


class RouteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operator_id: int
    source: str
    destination: str
    price: Decimal


class TripCommand(BaseModel):
    """
    Represents the command for creating a trip.

    Attributes:
        route_id (int): The route the trip runs.
        journey_date (date): Day of departure.
        departure_time (time): Time of departure.
        seat_quota (int): Seats sold over WhatsApp.
    """
    route_id: int
    journey_date: date
    departure_time: time
    seat_quota: int = Field(..., ge=0, description="Seats sold over WhatsApp")


class QuotaCommand(BaseModel):
    seat_quota: int = Field(..., ge=0, description="New WhatsApp seat quota")


class TripOut(BaseModel):
    id: int
    route: RouteOut
    journey_date: date
    departure_time: time
    seat_quota: int
    available: int
    held: int
    confirmed: int


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    media_id: str
    media_type: MediaType
    mime_type: Optional[str] = None
    url: Optional[str] = None
    received_at: datetime


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trip_id: int
    customer_name: Optional[str] = None
    customer_phone: str
    seat_count: int
    status: BookingStatus
    hold_expires_at: Optional[datetime] = None
    ticket_received_at: Optional[datetime] = None
    created_at: datetime
    attachment: Optional[AttachmentOut] = None


class TripDetail(TripOut):
    bookings: list[BookingOut]


class SweepResult(BaseModel):
    expired: list[int]
