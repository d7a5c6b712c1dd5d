"""Exceptions raised by infragraph."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from infragraph.store.upsert import MergeReport


class InfragraphError(Exception):
    """Base class for infragraph errors."""

    pass


class StoreError(InfragraphError):
    """Raised by graph store adapters."""

    pass


class StoreUnavailableError(StoreError):
    """The store could not be reached or timed out. Safe to retry."""

    pass


class StoreConflictError(StoreError):
    """A store constraint was violated. Never retried."""

    pass


class MergeError(InfragraphError):
    """Raised when a merge fails as a whole; carries the full report."""

    def __init__(self, message: str, report: MergeReport) -> None:
        super().__init__(message)
        self.report = report
