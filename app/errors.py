"""Exception types shared by the stores, sweeps and lifecycle handlers."""

from __future__ import annotations


class BookingError(Exception):
    """Base class for errors raised by this backend."""


class ConfigurationError(BookingError):
    """Required credentials are missing. Raised once at process start."""


class StoreError(BookingError):
    """The database could not be reached or the write did not commit.

    Sweeps do not retry this themselves: nothing was mutated, so the next
    sweep cycle picks the same records up again.
    """


class BatchTooLarge(StoreError):
    pass


class PreconditionFailed(StoreError):
    """A conditional write found the document in an unexpected state."""

    def __init__(self, collection: str, doc_id: str, expected: dict):
        super().__init__(f"{collection}/{doc_id} does not match {expected}")
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected


class ChannelDeliveryError(BookingError):
    """A single channel failed for a single recipient."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class DataIntegrityError(BookingError):
    """A referenced appointment or merchant no longer exists."""


class InvalidTransition(BookingError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")
        self.current = current
        self.target = target
