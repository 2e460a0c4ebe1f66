"""Migration error taxonomy."""

from typing import Optional


class MigrationError(Exception):
    """Base exception for migration errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[dict] = None,
    ):
        """Initialize migration error.

        Args:
            message: Error message
            status_code: HTTP status code, when the error came from a response
            response_data: Response data from the remote service
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class ValidationError(MigrationError):
    """Invalid configuration or run options. Aborts before any run starts."""

    pass


class TransientError(MigrationError):
    """Network, timeout or server-side failure worth retrying."""

    pass


class RateLimitError(MigrationError):
    """Quota exhausted on a remote service."""

    def __init__(self, message: str, retry_after: float = 60, **kwargs):
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds the service asked us to wait
            **kwargs: Additional arguments for base class
        """
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConflictError(MigrationError):
    """Ledger revision mismatch; the caller must reload and retry."""

    def __init__(self, entry_id: str, expected: int, actual: int):
        super().__init__(
            f'Entry {entry_id} changed concurrently '
            f'(expected revision {expected}, found {actual})'
        )
        self.entry_id = entry_id
        self.expected = expected
        self.actual = actual


class FatalStageError(MigrationError):
    """Unrecoverable content or schema problem for a single entry."""

    pass


class NotFoundError(FatalStageError):
    """Resource not found error."""

    pass


class AuthenticationError(FatalStageError):
    """Authentication or permission error with a remote service."""

    pass
