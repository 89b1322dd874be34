from datetime import timedelta

from sqlalchemy import select

from seatbook.bookings import get_booking, transition
from seatbook.confirmation import TicketMedia
from seatbook.ledger import seat_counts
from seatbook.models import (
    BookingStatus, MediaType, MessageKind, MessageLog, TicketAttachment, TransitionOutcome,
)
from seatbook.parser import BookingIntent
from seatbook.sweeps import expire_stale_holds
from tests.util_constant import (
    CUSTOMER_PHONE, DEPARTURE, JOURNEY_DATE, OPERATOR_PHONE, OTHER_CUSTOMER_PHONE,
)

TICKET = TicketMedia(media_id="media-1", media_type=MediaType.IMAGE, mime_type="image/jpeg")


def intent(seats=1):
    return BookingIntent(source="Mumbai", destination="Pune", journey_date=JOURNEY_DATE,
                         departure_time=DEPARTURE, seat_count=seats)


async def stored(db, booking_id):
    async with db.Session() as session:
        return await get_booking(session, booking_id)


class TestConfirmationEngine:

    async def test_without_a_hold_nothing_happens(self, db, operator, trip, confirmation_engine, messenger):
        assert await confirmation_engine.confirm_latest(operator, TICKET) is None

        assert messenger.sent == []
        async with db.Session() as session:
            assert list(await session.scalars(select(TicketAttachment))) == []

    async def test_confirms_the_most_recent_hold(self, db, operator, trip, hold_issuer,
                                                 confirmation_engine, clock):
        older = await hold_issuer.issue(intent(), OTHER_CUSTOMER_PHONE)
        clock.advance(minutes=1)
        newer = await hold_issuer.issue(intent(seats=2), CUSTOMER_PHONE)
        clock.advance(minutes=2)

        confirmed = await confirmation_engine.confirm_latest(operator, TICKET)

        assert confirmed.id == newer.id
        assert confirmed.status is BookingStatus.CONFIRMED
        assert confirmed.ticket_received_at == clock.now
        assert confirmed.hold_expires_at is None
        assert (await stored(db, older.id)).status is BookingStatus.HOLD

    async def test_ticket_is_stored_and_both_parties_are_told(self, db, operator, trip, hold_issuer,
                                                              confirmation_engine, messenger):
        booking = await hold_issuer.issue(intent(seats=2), CUSTOMER_PHONE)
        messenger.sent.clear()
        messenger.media_urls["media-1"] = "https://lookaside.example/media-1"

        await confirmation_engine.confirm_latest(operator, TICKET)

        attachment = (await stored(db, booking.id)).attachment
        assert attachment.media_id == "media-1"
        assert attachment.media_type is MediaType.IMAGE
        assert attachment.mime_type == "image/jpeg"
        assert attachment.url == "https://lookaside.example/media-1"

        [customer_message] = messenger.messages_to(CUSTOMER_PHONE)
        assert "confirmed" in customer_message
        assert f"Booking ID: {booking.id}" in customer_message
        [operator_message] = messenger.messages_to(OPERATOR_PHONE)
        assert operator_message == (
            f"Booking {booking.id} has been confirmed and the customer has been notified."
        )

        async with db.Session() as session:
            kinds = list(await session.scalars(
                select(MessageLog.kind).where(MessageLog.booking_id == booking.id).order_by(MessageLog.id)
            ))
        assert kinds[-2:] == [MessageKind.CONFIRMATION, MessageKind.OPERATOR_NOTIFICATION]

    async def test_unresolvable_media_url_still_confirms(self, db, operator, trip, hold_issuer,
                                                         confirmation_engine):
        booking = await hold_issuer.issue(intent(), CUSTOMER_PHONE)

        await confirmation_engine.confirm_latest(
            operator, TicketMedia(media_id="doc-9", media_type=MediaType.DOCUMENT)
        )

        booking = await stored(db, booking.id)
        assert booking.status is BookingStatus.CONFIRMED
        assert booking.attachment.media_type is MediaType.DOCUMENT
        assert booking.attachment.url is None

    async def test_expired_hold_is_not_confirmed(self, db, operator, trip, hold_issuer,
                                                 confirmation_engine, messenger, clock):
        booking = await hold_issuer.issue(intent(), CUSTOMER_PHONE)
        clock.advance(minutes=11)
        assert await expire_stale_holds(db, clock.now) == [booking.id]
        messenger.sent.clear()

        assert await confirmation_engine.confirm_latest(operator, TICKET) is None

        assert (await stored(db, booking.id)).status is BookingStatus.EXPIRED
        assert messenger.sent == []

    async def test_overdue_hold_not_yet_swept_is_confirmed(self, db, operator, trip, hold_issuer,
                                                           confirmation_engine, clock):
        booking = await hold_issuer.issue(intent(), CUSTOMER_PHONE)
        clock.advance(minutes=15)

        confirmed = await confirmation_engine.confirm_latest(operator, TICKET)

        assert confirmed.id == booking.id
        assert await expire_stale_holds(db, clock.now) == []
        assert (await stored(db, booking.id)).status is BookingStatus.CONFIRMED

    async def test_confirmed_seats_never_return(self, db, operator, trip, hold_issuer,
                                                confirmation_engine, clock):
        await hold_issuer.issue(intent(seats=3), CUSTOMER_PHONE)
        await confirmation_engine.confirm_latest(operator, TICKET)
        clock.advance(days=1)

        async with db.Session() as session:
            counts = await seat_counts(session, trip, clock.now)
        assert counts.confirmed == 3
        assert counts.held == 0
        assert counts.available == 2

    async def test_second_ticket_confirms_the_next_hold(self, db, operator, trip, hold_issuer,
                                                        confirmation_engine, clock):
        first = await hold_issuer.issue(intent(), OTHER_CUSTOMER_PHONE)
        clock.advance(seconds=30)
        second = await hold_issuer.issue(intent(), CUSTOMER_PHONE)

        assert (await confirmation_engine.confirm_latest(operator, TICKET)).id == second.id
        clock.advance(seconds=30)
        other_ticket = TicketMedia(media_id="media-2", media_type=MediaType.IMAGE)
        assert (await confirmation_engine.confirm_latest(operator, other_ticket)).id == first.id
        assert await confirmation_engine.confirm_latest(operator, other_ticket) is None


    async def test_hold_expired_between_selection_and_update(self, db, operator, trip, hold_issuer,
                                                             confirmation_engine, messenger, clock):
        booking = await hold_issuer.issue(intent(), CUSTOMER_PHONE)
        messenger.sent.clear()

        async def sweep_then_resolve(media_id):
            assert await expire_stale_holds(db, clock.now + timedelta(minutes=11)) == [booking.id]
            return None

        messenger.get_media_url = sweep_then_resolve

        assert await confirmation_engine.confirm_latest(operator, TICKET) is None

        stored_booking = await stored(db, booking.id)
        assert stored_booking.status is BookingStatus.EXPIRED
        assert stored_booking.attachment is None
        assert messenger.sent == []


class TestTransition:

    async def test_outcomes(self, db, trip, hold_issuer):
        booking = await hold_issuer.issue(intent(), CUSTOMER_PHONE)

        async with db.Session() as session:
            assert await transition(session, booking.id, BookingStatus.EXPIRED) is TransitionOutcome.APPLIED
            await session.commit()
        async with db.Session() as session:
            assert (await transition(session, booking.id, BookingStatus.CONFIRMED)
                    is TransitionOutcome.ALREADY_TRANSITIONED)
            assert await transition(session, 999, BookingStatus.CONFIRMED) is TransitionOutcome.NOT_FOUND

        assert (await stored(db, booking.id)).status is BookingStatus.EXPIRED
