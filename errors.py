"""Error types shared by the exposure engine and its thin API."""

from __future__ import annotations


class SunnySeatError(Exception):
    """Base class for engine errors."""


class InputValidationError(SunnySeatError):
    """Request rejected before any computation was started."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DataUnavailableError(SunnySeatError):
    """Input data is missing; callers fall back instead of failing."""


class ComputationError(SunnySeatError):
    """Geometry or numeric failure tied to one building or patio."""

    def __init__(self, message: str, entity_id: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class ProviderUnavailableError(SunnySeatError):
    def __init__(self, message: str, provider: str | None = None, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.errors = dict(errors or {})


class OperationCancelledError(SunnySeatError):
    """Caller went away; the timeline stopped at a tick boundary."""


class PatioNotFoundError(InputValidationError):
    def __init__(self, patio_id: str) -> None:
        super().__init__(f"unknown patio id: {patio_id}", field="patio_id")
        self.patio_id = patio_id
