"""Exception hierarchy for the loan servicing engine."""


class ServicingError(Exception):
    """Base exception for all servicing errors."""


class ServicingValidationError(ServicingError, ValueError):
    """Raised when input is rejected before any state is mutated."""


class CreditNotFoundError(ServicingValidationError):
    """Raised when a referenced credit does not exist."""


class RecordNotFoundError(ServicingValidationError):
    """Raised when a referenced batch, pending balance or dispatch record does not exist."""


class InvalidStateTransitionError(ServicingValidationError):
    """Raised when a status change is not in the entity's transition table."""


class DuplicateBatchError(ServicingValidationError):
    """Raised when committing a batch whose deductor and period already have an active upload."""


class StalePreviewError(ServicingValidationError):
    """Raised when a batch commit token is unknown, expired or no longer matches current state."""


class PermissionDeniedError(ServicingError):
    """Raised when the acting operator lacks the privilege an operation requires."""


class ScheduleIntegrityError(ServicingError):
    """Raised when a generated schedule does not amortize the principal exactly."""
