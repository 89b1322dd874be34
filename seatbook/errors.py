"""
This module contains the exceptions raised by the booking core.

`BookingError` and its subclasses are input errors: their `reason` is written
for the customer and is sent back to them verbatim.
"""


class BookingError(Exception):
    """Base class for booking requests that cannot be honoured."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MessageParseError(BookingError):
    """The message looks like a booking request but a field is missing or invalid."""
    pass


class RouteNotFound(BookingError):
    def __init__(self, source: str, destination: str):
        super().__init__(f"Sorry, we don't run a bus from {source} to {destination}.")
        self.source = source
        self.destination = destination


class AmbiguousRoute(BookingError):
    def __init__(self, source: str, destination: str, candidates: list[str]):
        options = "; ".join(candidates)
        super().__init__(
            f"'{source} to {destination}' matches more than one route ({options}). "
            "Please send the full place names."
        )
        self.candidates = candidates


class TripNotFound(BookingError):
    def __init__(self, route_label: str, journey_date, departure_time):
        super().__init__(
            f"There is no {route_label} bus at {departure_time:%H:%M} on "
            f"{journey_date:%d %b %Y}."
        )


class InsufficientSeats(BookingError):
    def __init__(self, requested: int, remaining: int):
        if remaining <= 0:
            reason = "Sorry, this bus is fully booked."
        else:
            reason = (
                f"Sorry, only {remaining} seat(s) are left on this bus "
                f"and you asked for {requested}."
            )
        super().__init__(reason)
        self.requested = requested
        self.remaining = remaining


class QuotaBelowCommitted(Exception):
    """A quota change would drop below the seats already confirmed or held."""

    def __init__(self, requested: int, committed: int):
        super().__init__(
            f"Quota {requested} is below the {committed} seat(s) already confirmed or held"
        )
        self.requested = requested
        self.committed = committed


class DataIntegrityError(Exception):
    """A record that must exist (trip, route, booking) is missing."""
    pass


class IllegalTransition(Exception):
    """A booking status change that the state machine does not allow."""
    pass
