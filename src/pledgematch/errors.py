"""Error taxonomy for the reconciliation and matching core."""


class ReconciliationError(Exception):
    """Base class for errors raised by the reconciliation core."""


class ValidationError(ReconciliationError):
    """A required field is missing or malformed."""


class NotFoundError(ReconciliationError):
    """The donation an event refers to does not exist."""


class ConfigurationError(ReconciliationError):
    """Secrets or settings are missing or malformed."""


class DecryptionError(ReconciliationError):
    """The webhook ciphertext could not be turned into a JSON object."""


class DataIntegrityError(ReconciliationError):
    """A stored value cannot be used (e.g. a non-finite donation amount)."""


class WebhookRejected(ReconciliationError):
    """The delivery is refused before any state is touched.

    Carries the client-facing reason; the HTTP layer answers 400.
    """

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class DirectoryUnavailableError(ReconciliationError):
    """The matching donor directory could not produce a complete snapshot."""
