"""Exception hierarchy for feedline.

Three kinds of failure cross the package boundary:

- ConfigurationError: the dataset or parameters cannot produce batches at
  all (empty source, unreadable record list, clips too short for the
  requested segments). Raised at setup time and never retried.
- DecodeError: a single record could not be read. The prefetch loop logs
  it and moves on; it never reaches the consumer.
- LifecycleError: the caller drove a layer or engine out of order
  (double start, forward before setup, worker that will not join).
"""

from __future__ import annotations


class FeedlineError(Exception):
    """Base exception for all feedline failures."""


class ConfigurationError(FeedlineError, ValueError):
    """Raised for datasets or parameters that cannot produce a batch."""


class DecodeError(FeedlineError):
    """Raised when one record cannot be decoded.

    Attributes:
        locator: Path, key or (file, row) pair identifying the record.
    """

    def __init__(self, message: str, locator: object = None) -> None:
        super().__init__(message)
        self.locator = locator


class LifecycleError(FeedlineError, RuntimeError):
    """Raised when an engine or layer is used out of order."""


__all__ = [
    "ConfigurationError",
    "DecodeError",
    "FeedlineError",
    "LifecycleError",
]
