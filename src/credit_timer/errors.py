"""Exception types raised by the credit timer."""

from __future__ import annotations


class CreditTimerError(Exception):
    """Base class for all credit timer errors."""


class StorageUnavailable(CreditTimerError):
    """The durable state store could not be read or written.

    The operation that raised it did not take effect; the last successfully
    persisted snapshot is still authoritative.
    """


class InvalidArgument(CreditTimerError, ValueError):
    """An argument was rejected before any state was touched."""


class ConcurrentModification(StorageUnavailable):
    """The stored snapshot changed between read and write.

    Another process sharing the store wrote first; nothing was written.
    """
