"""Exception hierarchy for artiflow."""

from __future__ import annotations


class ArtiflowError(Exception):
    """Base class for all artiflow errors."""


class OutOfOrderDeltaError(ArtiflowError):
    """A delta arrived with a sequence not greater than the last applied one."""

    def __init__(self, sequence: int, last_sequence: int) -> None:
        super().__init__(
            f"Delta sequence {sequence} is not after last applied sequence {last_sequence}"
        )
        self.sequence = sequence
        self.last_sequence = last_sequence


class SessionFailedError(ArtiflowError):
    """The session was already marked failed and accepts no more deltas."""


class PersistenceError(ArtiflowError):
    """The persistence collaborator could not complete a write."""
