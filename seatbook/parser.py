"""
This module turns free-text customer messages into booking intents.

Three shapes are understood, case-insensitively:

    Route: Mumbai to Pune, Date: 2024-01-15, Time: 08:00, Seats: 2
    Mumbai, Pune, 2024-01-15, 08:00, 2
    BOOK Mumbai Pune 2024-01-15 08:00 2

A message that is none of these is not a booking attempt and parses to None.
A message that is one of these but has a missing or malformed field raises
MessageParseError with a reason meant for the customer.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from .errors import MessageParseError

BOOK_KEYWORD = "BOOK"
MAX_SEATS = 10

_LABEL = re.compile(r"^\s*(route|from|source|to|destination|date|time|seats?)\s*[:=]\s*(.*)$",
                    re.IGNORECASE)
_ROUTE_SPLIT = re.compile(r"\s+to\s+|\s*(?:->|→)\s*", re.IGNORECASE)
_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y")
_TIME_24H = re.compile(r"^(\d{1,2})[:.](\d{2})$")
_TIME_12H = re.compile(r"^(\d{1,2})(?:[:.](\d{2}))?\s*(am|pm)$", re.IGNORECASE)
_DATE_TOKEN = re.compile(r"^(\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[-/.]\d{1,2}[-/.]\d{4}|today|tomorrow)$",
                         re.IGNORECASE)


@dataclass(frozen=True)
class BookingIntent:
    source: str
    destination: str
    journey_date: date
    departure_time: time
    seat_count: int = 1


def is_book_keyword(text: str) -> bool:
    return (text or "").strip().upper() == BOOK_KEYWORD


def usage_text() -> str:
    return (
        "To book seats, send a message like:\n\n"
        "Route: Mumbai to Pune, Date: 2024-01-15, Time: 08:00, Seats: 2\n\n"
        "or\n\n"
        "BOOK Mumbai Pune 2024-01-15 08:00 2"
    )


def parse_date(value: str, today: date) -> date:
    value = value.strip()
    lowered = value.lower()
    if lowered == "today":
        return today
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise MessageParseError(
        f"I couldn't read the date '{value}'. Please use YYYY-MM-DD, e.g. 2024-01-15."
    )


def parse_time(value: str) -> time:
    value = value.strip()
    match = _TIME_24H.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 24 and minute < 60:
            return time(hour, minute)
    match = _TIME_12H.match(value)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        if 1 <= hour <= 12 and minute < 60:
            hour = hour % 12 + (12 if match.group(3).lower() == "pm" else 0)
            return time(hour, minute)
    raise MessageParseError(
        f"I couldn't read the time '{value}'. Please use 24-hour HH:MM, e.g. 08:00."
    )


def parse_seats(value: Optional[str]) -> int:
    if value is None or not value.strip():
        return 1
    value = value.strip()
    if not value.isdigit():
        raise MessageParseError(f"I couldn't read the number of seats '{value}'.")
    seats = int(value)
    if not 1 <= seats <= MAX_SEATS:
        raise MessageParseError(f"You can book between 1 and {MAX_SEATS} seats per message.")
    return seats


def _split_route(value: str) -> tuple[str, str]:
    parts = [part.strip() for part in _ROUTE_SPLIT.split(value.strip(), maxsplit=1)]
    if len(parts) != 2 or not all(parts):
        raise MessageParseError(
            "Please give the route as 'Source to Destination', e.g. Mumbai to Pune."
        )
    return parts[0], parts[1]


def _require(fields: dict, name: str, hint: str) -> str:
    value = fields.get(name)
    if not value:
        raise MessageParseError(f"Missing {name}. {hint}")
    return value


def _build(fields: dict, today: date) -> BookingIntent:
    if not fields.get("source") or not fields.get("destination"):
        raise MessageParseError("Missing route. Please add e.g. 'Route: Mumbai to Pune'.")
    journey_date = parse_date(_require(fields, "date", "Please add e.g. 'Date: 2024-01-15'."), today)
    departure_time = parse_time(_require(fields, "time", "Please add e.g. 'Time: 08:00'."))
    return BookingIntent(
        source=fields["source"],
        destination=fields["destination"],
        journey_date=journey_date,
        departure_time=departure_time,
        seat_count=parse_seats(fields.get("seats")),
    )


def _parse_labeled(text: str, today: date) -> Optional[BookingIntent]:
    fields = {}
    for chunk in re.split(r"[,\n;]", text):
        match = _LABEL.match(chunk)
        if not match:
            continue
        label, value = match.group(1).lower(), match.group(2).strip()
        if label == "route":
            fields["source"], fields["destination"] = _split_route(value)
        elif label in ("from", "source"):
            fields["source"] = value
        elif label in ("to", "destination"):
            fields["destination"] = value
        elif label in ("seat", "seats"):
            fields["seats"] = value
        else:
            fields[label] = value
    if not fields:
        return None
    return _build(fields, today)


def _parse_positional(text: str, today: date) -> Optional[BookingIntent]:
    parts = [part.strip() for part in text.split(",")]
    if len(parts) < 3 or not any(_looks_like_date_or_time(part) for part in parts[2:]):
        return None
    if len(parts) > 5:
        raise MessageParseError(
            "Too many parts. Please send: Source, Destination, Date, Time, Seats."
        )
    fields = {"source": parts[0], "destination": parts[1]}
    rest = parts[2:]
    # A date-looking part is the date; without one the date is missing.
    dates = [part for part in rest if _DATE_TOKEN.match(part)]
    if dates:
        fields["date"] = dates[0]
        rest.remove(dates[0])
    if len(rest) == 2 or (rest and not rest[-1].isdigit()):
        fields["time"] = rest.pop(0)
    if rest:
        fields["seats"] = rest.pop(0)
    return _build(fields, today)


def _looks_like_date_or_time(token: str) -> bool:
    return bool(_DATE_TOKEN.match(token) or _TIME_24H.match(token) or _TIME_12H.match(token))


def _parse_command(text: str, today: date) -> BookingIntent:
    tokens = text.split()[1:]
    fields = {}
    if tokens and tokens[-1].isdigit():
        fields["seats"] = tokens.pop()

    date_index = next((i for i, token in enumerate(tokens) if _DATE_TOKEN.match(token)), None)
    if date_index is None:
        route_tokens = tokens
        if tokens and _looks_like_date_or_time(tokens[-1]):
            fields["time"] = tokens[-1]
            route_tokens = tokens[:-1]
    else:
        fields["date"] = tokens[date_index]
        route_tokens = tokens[:date_index]
        fields["time"] = " ".join(tokens[date_index + 1:])

    route = " ".join(route_tokens)
    if re.search(r"\s+to\s+", route, re.IGNORECASE):
        fields["source"], fields["destination"] = _split_route(route)
    elif len(route_tokens) == 2:
        fields["source"], fields["destination"] = route_tokens
    elif route_tokens:
        raise MessageParseError(
            "Please give the route as 'Source to Destination', e.g. BOOK Mumbai to Pune 2024-01-15 08:00."
        )
    return _build(fields, today)


def parse_booking_message(text: str, today: date) -> Optional[BookingIntent]:
    """
    Parses a customer message into a booking intent.

    Args:
        text (str): The raw message text.
        today (date): Anchor for 'today' and 'tomorrow'.

    Returns:
        BookingIntent or None: The intent, or None if the text is not a booking attempt.

    Raises:
        MessageParseError: If the text is a booking attempt with a missing or invalid field.
    """
    text = (text or "").strip()
    if not text:
        return None

    first_word = text.split()[0].upper()
    if first_word == BOOK_KEYWORD and len(text.split()) > 1:
        return _parse_command(text, today)

    labeled = _parse_labeled(text, today)
    if labeled is not None:
        return labeled

    return _parse_positional(text, today)
