class LedgerError(Exception):
    """Base class for every error raised by the ledger services."""


class MalformedInputError(LedgerError, ValueError):
    """Raised when a reading, record, digest or argument cannot be used as given."""


class MalformedCredentialError(MalformedInputError):
    """Raised when a PEM private key or certificate is not usable."""

    def __init__(self, org_id: str, reason: str):
        self.org_id = org_id
        self.reason = reason
        super().__init__(f"Invalid credentials for {org_id}: {reason}")


class UnknownOperationError(LedgerError, LookupError):
    """Raised when an operation name does not map to a contract handler."""


class StoreUnavailableError(LedgerError):
    """Raised when the document store or the ledger cannot be reached."""


class ReadingNotFoundError(LedgerError, LookupError):
    """Raised when no stored reading has the requested (timestamp, sensorId)."""
