class BookingError(Exception):
    """Base class for errors raised while generating or storing bookings."""


class InvalidInputError(BookingError):
    """A required field is missing or malformed. Nothing was processed."""


class ConflictCheckError(BookingError):
    """The overlap query for one candidate date failed.

    Recovered by the expander: the date is skipped and enumeration continues.
    """


class PersistenceError(BookingError):
    """The final bulk insert failed and the batch was rolled back."""
