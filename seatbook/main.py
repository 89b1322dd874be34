"""
This module contains the main FastAPI application for the seat booking service.
"""
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

from alchemical.aio import Alchemical
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .config import Settings, configure_logging, get_settings
from .confirmation import ConfirmationEngine
from .db import create_db_and_tables, create_store, ensure_operator, get_db, get_db_session
from .dispatcher import InboundDispatcher, process_webhook
from .errors import QuotaBelowCommitted
from .holds import HoldIssuer, TripLocks, change_quota
from .ledger import SeatCounts, seat_counts, trip_stats
from .models import Booking, Operator, Route, Trip
from .notifier import Notifier
from .schemas import (
    BookingOut, QuotaCommand, RouteCommand, RouteOut, SweepResult, TripCommand, TripDetail, TripOut,
)
from .sweeps import expire_stale_holds
from .whatsapp import Messenger, WhatsAppClient, normalize_phone

logger = logging.getLogger(__name__)


def install_services(api_app: FastAPI, settings: Settings, db: Alchemical,
                     messenger: Messenger, clock=datetime.now):
    """
    Wires the booking components onto the application state.

    Args:
        api_app (FastAPI): The FastAPI application instance.
        settings (Settings): The configuration to use.
        db (Alchemical): The store handle shared by every component.
        messenger (Messenger): The outbound channel.
        clock (Callable): Source of the current time.
    """
    locks = TripLocks()
    notifier = Notifier(db, messenger, clock)
    hold_issuer = HoldIssuer(db, notifier, settings, locks, clock)
    confirmation_engine = ConfirmationEngine(db, notifier, messenger, clock)

    api_app.state.settings = settings
    api_app.state.db = db
    api_app.state.clock = clock
    api_app.state.trip_locks = locks
    api_app.state.dispatcher = InboundDispatcher(db, hold_issuer, confirmation_engine, notifier, clock)


@asynccontextmanager
async def lifespan(api_app: FastAPI):
    """
    Asynchronous context manager for the lifespan of the FastAPI application.
    It creates the database and tables and seeds the operator on startup.

    Args:
        api_app (FastAPI): The FastAPI application instance.
    """
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    db = create_store(settings.DATABASE_URL)
    await create_db_and_tables(db)
    await ensure_operator(db, settings.OPERATOR_PHONE, settings.OPERATOR_NAME)

    messenger = WhatsAppClient(settings)
    install_services(api_app, settings, db, messenger)
    yield
    await messenger.aclose()


app = FastAPI(title="WhatsApp Seat Booking", lifespan=lifespan)


def _now(request: Request) -> datetime:
    return request.app.state.clock()


def _trip_out(trip: Trip, counts: SeatCounts) -> dict:
    return {
        "id": trip.id,
        "route": RouteOut.model_validate(trip.route),
        "journey_date": trip.journey_date,
        "departure_time": trip.departure_time,
        "seat_quota": trip.seat_quota,
        "available": counts.available,
        "held": counts.held,
        "confirmed": counts.confirmed,
    }


@app.get("/health")
async def health():
    """
    Health check endpoint.
    """
    return {"ok": True}


@app.get("/whatsapp/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
):
    """
    Webhook verification handshake required by the WhatsApp Cloud API.

    Returns:
        str: The challenge, echoed back when mode and token are valid.
    """
    if not mode or not token:
        logger.warning("Webhook verification failed: missing parameters")
        raise HTTPException(status_code=400, detail="Missing hub.mode or hub.verify_token")

    expected = request.app.state.settings.WEBHOOK_VERIFY_TOKEN
    if mode != "subscribe" or not expected or token != expected:
        logger.warning("Webhook verification failed: token mismatch")
        raise HTTPException(status_code=403, detail="Verification failed")

    logger.info("Webhook verified")
    return challenge


@app.post("/whatsapp/webhook", response_class=PlainTextResponse)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Receives WhatsApp events.

    The delivery is always acknowledged with 200 so the provider never
    retries; the message is processed in the background afterwards.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON, ignoring")
        return "OK"

    background_tasks.add_task(process_webhook, request.app.state.dispatcher, payload)
    return "OK"


@app.get("/routes", response_model=list[RouteOut])
async def list_routes(db: AsyncSession = Depends(get_db_session)):
    """
    Lists the operator's routes.
    """
    return list(await db.scalars(select(Route).order_by(Route.id)))


@app.post("/routes", response_model=RouteOut, status_code=201)
async def create_route(route_cmd: RouteCommand, request: Request,
                       db: AsyncSession = Depends(get_db_session)):
    """
    Creates a route for the configured operator.

    Args:
        route_cmd (RouteCommand): Source, destination and price.
        db (AsyncSession): The database session.

    Returns:
        Route: The created route.
    """
    operator_phone = normalize_phone(request.app.state.settings.OPERATOR_PHONE)
    operator = await db.scalar(select(Operator).where(Operator.phone_number == operator_phone))
    if operator is None:
        logger.error(f"Operator {operator_phone} is not seeded, cannot create route")
        raise HTTPException(status_code=500, detail="Operator is not configured")
    route = Route(operator_id=operator.id, **route_cmd.model_dump())
    db.add(route)
    await db.commit()
    return route


@app.get("/trips", response_model=list[TripOut])
async def list_trips(request: Request, journey_date: Optional[date] = None,
                     db: AsyncSession = Depends(get_db_session)):
    """
    Lists trips with their available, held and confirmed seat counts.

    Args:
        journey_date (date): Only list trips on this day.
        db (AsyncSession): The database session.
    """
    query = select(Trip).order_by(Trip.journey_date, Trip.departure_time, Trip.id)
    if journey_date is not None:
        query = query.where(Trip.journey_date == journey_date)
    trips = list(await db.scalars(query))
    stats = await trip_stats(db, trips, _now(request))
    return [_trip_out(trip, stats[trip.id]) for trip in trips]


@app.get("/trips/{trip_id}", response_model=TripDetail)
async def get_trip(trip_id: int, request: Request, db: AsyncSession = Depends(get_db_session)):
    """
    Retrieves a trip with its seat counts and its bookings.
    """
    trip = await db.scalar(
        select(Trip).where(Trip.id == trip_id).options(selectinload(Trip.bookings))
    )
    if trip is None:
        raise HTTPException(status_code=404, detail="Trip not found")
    counts = await seat_counts(db, trip, _now(request))
    return {
        **_trip_out(trip, counts),
        "bookings": [BookingOut.model_validate(booking) for booking in trip.bookings],
    }


@app.post("/trips", response_model=TripOut, status_code=201)
async def create_trip(trip_cmd: TripCommand, db: AsyncSession = Depends(get_db_session)):
    """
    Creates a trip. A route has at most one trip per date and departure time.
    """
    if await db.get(Route, trip_cmd.route_id) is None:
        raise HTTPException(status_code=404, detail="Route not found")

    trip = Trip(**trip_cmd.model_dump())
    db.add(trip)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="A trip already exists for this route, date and time")

    trip = await db.get(Trip, trip.id, populate_existing=True)
    logger.info(f"Trip {trip.id} created: route {trip.route_id} {trip.journey_date} {trip.departure_time}")
    return _trip_out(trip, SeatCounts(quota=trip.seat_quota, confirmed=0, held=0))


@app.patch("/trips/{trip_id}/quota", response_model=TripOut)
async def update_trip_quota(trip_id: int, quota_cmd: QuotaCommand, request: Request):
    """
    Changes a trip's WhatsApp seat quota.

    The new quota may not be lower than the seats already confirmed or on an active hold.
    """
    db = get_db(request)
    now = _now(request)
    try:
        trip = await change_quota(db, request.app.state.trip_locks, trip_id, quota_cmd.seat_quota, now)
    except QuotaBelowCommitted as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if trip is None:
        raise HTTPException(status_code=404, detail="Trip not found")

    async with db.Session() as session:
        trip = await session.get(Trip, trip_id)
        counts = await seat_counts(session, trip, now)
    return _trip_out(trip, counts)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: int, db: AsyncSession = Depends(get_db_session)):
    """
    Retrieves a booking by its ID.

    Args:
        booking_id (int): The ID of the booking to retrieve.
        db (AsyncSession): The database session.
    """
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@app.post("/sweeps/expire", response_model=SweepResult)
async def run_expiry_sweep(request: Request):
    """
    Runs the hold expiration sweep once, outside the Celery beat schedule.
    """
    expired = await expire_stale_holds(get_db(request), _now(request))
    return {"expired": expired}
