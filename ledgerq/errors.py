class LedgerQError(Exception):
    """Base class for every error kind raised by ledgerq."""

    reason = "INTERNAL_ERROR"


class ValidationError(LedgerQError):
    reason = "VALIDATION_ERROR"

    def __init__(self, message: str = "Invalid request body", errors=None, reason=None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])
        if reason:
            self.reason = reason


class NotFoundError(LedgerQError):
    reason = "NOT_FOUND"


class InternalError(LedgerQError):
    reason = "INTERNAL_ERROR"


class AuthenticationError(LedgerQError):
    reason = "NO_VALID_APIKEY"


class StoreUnavailableError(LedgerQError):
    """The queue/status store cannot be reached. Fatal for the worker pool."""

    reason = "STORE_UNAVAILABLE"


# ---------- Submit-layer errors ----------
TRANSIENT = "transient"
PERMANENT = "permanent"


class SubmitError(LedgerQError):
    """
    Raised by a backend adapter from submit().
    `kind` is the classification the worker acts on; adapters set it,
    the worker never guesses it from the message text.
    """

    kind = TRANSIENT

    def __init__(self, message: str, kind=None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind == TRANSIENT


class TransientSubmitError(SubmitError):
    kind = TRANSIENT


class PermanentSubmitError(SubmitError):
    kind = PERMANENT
