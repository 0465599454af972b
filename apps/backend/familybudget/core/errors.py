from __future__ import annotations


class FamilyBudgetError(Exception):
    """Base class for pipeline errors surfaced to the job layer."""


class AggregatorError(FamilyBudgetError):
    """The card-data aggregator could not be reached or rejected a request."""

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class TransportError(FamilyBudgetError):
    """A push or SMS delivery attempt failed."""


class ConfigurationError(FamilyBudgetError):
    """Required credentials for an external collaborator are missing."""
