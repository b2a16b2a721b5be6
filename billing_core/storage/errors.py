"""Error taxonomy shared by the stores and processors."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import pymongo
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class BillingCoreError(Exception):
    """Base class for errors raised by the billing core."""


class StorageFailure(BillingCoreError):
    """Connectivity, timeout or constraint failure other than a known duplicate."""


class RowValidationError(BillingCoreError):
    """An import row is missing a required field or carries an unusable value."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class BatchInputError(BillingCoreError):
    """The input resource of an import batch cannot be read."""


class BatchClosedError(BillingCoreError):
    """Rows were offered to a batch that is no longer ``processing``."""


class InvalidCallbackSignature(BillingCoreError):
    """A processor callback failed HMAC verification."""


@contextmanager
def translate_storage_errors(operation: str) -> Iterator[None]:
    """Re-raise driver errors as :class:`StorageFailure`.

    Duplicate-key errors must be handled inside the block by the caller;
    anything that escapes is a genuine storage failure.
    """
    try:
        yield
    except PyMongoError as exc:
        logger.error("Storage operation %s failed: %s", operation, exc)
        raise StorageFailure(f"{operation} failed: {exc}") from exc


@contextmanager
def store_timeout(seconds: float | None) -> Iterator[None]:
    """Bound every driver call in the block by *seconds* (``None`` = client default)."""
    if seconds is None:
        yield
        return
    with pymongo.timeout(seconds):
        yield
