# src/gatherpay/domain/errors.py
"""
Error taxonomy for the pipeline.

Everything derives from `PipelineError`, itself a `ValueError`, so callers
that only know "business error vs. crash" keep working. `status_code` is the
HTTP status the API layer answers with.
"""


class PipelineError(ValueError):
    status_code = 400


class ValidationError(PipelineError):
    """Bad input or a request the current state does not allow; nothing changed."""
    status_code = 400


class DiscountInvalidError(ValidationError):
    pass


class ForbiddenError(PipelineError):
    status_code = 403


class NotFoundError(PipelineError):
    status_code = 404


class ConflictError(PipelineError):
    """Duplicate or already-processed work."""
    status_code = 409


class InvalidTransitionError(ConflictError):
    pass


class WindowExpiredError(PipelineError):
    """Payment attempted after the reservation window closed."""
    status_code = 410


class ExternalDependencyError(PipelineError):
    status_code = 502


class LedgerError(ExternalDependencyError):
    """The payment ledger rejected a call or could not be reached."""


class LedgerUnavailableError(LedgerError):
    """No answer (transport error, 5xx): the call may or may not have taken effect."""


class RefundFailedError(ExternalDependencyError):
    pass
