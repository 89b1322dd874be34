"""
This module contains the inbound dispatcher, which routes each WhatsApp message
to the hold issuer or the confirmation engine depending on who sent it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from alchemical.aio import Alchemical
from sqlalchemy import select

from .confirmation import ConfirmationEngine, TicketMedia
from .errors import BookingError
from .holds import HoldIssuer
from .models import MediaType, MessageKind, Operator
from .notifier import Notifier
from .parser import is_book_keyword, parse_booking_message, usage_text
from .whatsapp import normalize_phone

logger = logging.getLogger(__name__)

MEDIA_KINDS = {media_type.value for media_type in MediaType}


@dataclass(frozen=True)
class InboundMessage:
    sender: str
    kind: str
    text: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    customer_name: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def is_media(self) -> bool:
        return self.kind in MEDIA_KINDS and bool(self.media_id)


def extract_inbound_message(payload: dict) -> Optional[InboundMessage]:
    """
    Pulls the first message out of a WhatsApp Cloud API webhook payload.

    Args:
        payload (dict): The decoded webhook body.

    Returns:
        InboundMessage or None: The message, or None if the payload carries none
        (status updates, malformed bodies).
    """
    try:
        value = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        logger.info("Invalid webhook payload structure")
        return None

    messages = value.get("messages") or []
    if not messages:
        logger.debug("No messages in webhook payload")
        return None

    message = messages[0]
    kind = message.get("type", "")
    contacts = value.get("contacts") or [{}]
    name = (contacts[0].get("profile") or {}).get("name")
    media = message.get(kind) if kind in MEDIA_KINDS else None

    return InboundMessage(
        sender=normalize_phone(message.get("from", "")),
        kind=kind,
        text=(message.get("text") or {}).get("body") if kind == "text" else None,
        media_id=(media or {}).get("id"),
        mime_type=(media or {}).get("mime_type"),
        customer_name=name,
        message_id=message.get("id"),
    )


class InboundDispatcher:
    """
    Classifies inbound messages by sender and kind and hands them to the right component.

    Unrecognized content from either party is logged and dropped without a reply.

    Args:
        db (Alchemical): The store handle, used to recognise the operator.
        hold_issuer (HoldIssuer): Handles customer booking requests.
        confirmation_engine (ConfirmationEngine): Handles operator tickets.
        notifier (Notifier): Sends replies to customers.
        clock (Callable): Source of the current time, anchors relative dates.
    """

    def __init__(self, db: Alchemical, hold_issuer: HoldIssuer,
                 confirmation_engine: ConfirmationEngine, notifier: Notifier,
                 clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.hold_issuer = hold_issuer
        self.confirmation_engine = confirmation_engine
        self.notifier = notifier
        self.clock = clock

    async def find_operator(self, phone_number: str) -> Optional[Operator]:
        async with self.db.Session() as session:
            return await session.scalar(
                select(Operator).where(Operator.phone_number == normalize_phone(phone_number))
            )

    async def dispatch(self, message: InboundMessage):
        """
        Handles one inbound message end to end.
        """
        operator = await self.find_operator(message.sender)
        if operator:
            await self.handle_operator_message(operator, message)
        else:
            await self.handle_customer_message(message)

    async def handle_operator_message(self, operator: Operator, message: InboundMessage):
        if not message.is_media:
            logger.info(f"Operator {operator.id} sent unhandled {message.kind} message, ignoring")
            return
        media = TicketMedia(
            media_id=message.media_id,
            media_type=MediaType(message.kind),
            mime_type=message.mime_type,
        )
        await self.confirmation_engine.confirm_latest(operator, media)

    async def handle_customer_message(self, message: InboundMessage):
        sender = message.sender
        if message.kind != "text" or not message.text:
            logger.info(f"Customer {sender} sent unhandled {message.kind} message, ignoring")
            return

        if is_book_keyword(message.text):
            await self.notifier.notify(sender, usage_text(), MessageKind.HELP)
            return

        try:
            intent = parse_booking_message(message.text, self.clock().date())
            if intent is None:
                logger.info(f"Customer {sender} sent unrecognized message: {message.text!r}")
                return
            await self.hold_issuer.issue(intent, sender, message.customer_name)
        except BookingError as exc:
            logger.info(f"Booking request from {sender} refused: {exc.reason}")
            await self.notifier.notify(sender, exc.reason, MessageKind.REJECTION)
        except Exception:
            logger.exception(f"Error processing booking request from {sender}")
            await self.notifier.notify(
                sender,
                "Sorry, there was an error processing your booking request. Please try again later.",
                MessageKind.REJECTION,
            )


async def process_webhook(dispatcher: InboundDispatcher, payload: dict):
    """
    Processes a webhook delivery after it has been acknowledged.

    Nothing raised here can reach the provider, so every failure ends in the log.
    """
    try:
        message = extract_inbound_message(payload)
        if message is None:
            return
        logger.info(f"Received {message.kind} message {message.message_id} from {message.sender}")
        await dispatcher.dispatch(message)
    except Exception:
        logger.exception("Error processing webhook")
