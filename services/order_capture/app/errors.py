"""
Error taxonomy for the Order Capture service.
"""
from typing import Optional


class OrderCaptureError(Exception):
    """Base class for every error raised by this service."""


class ConfigurationError(OrderCaptureError):
    """Required connection settings are missing or invalid. Never retried."""


class ValidationError(OrderCaptureError):
    """The order payload is malformed. Never retried."""


class TransientInfrastructureError(OrderCaptureError):
    """
    An infrastructure operation kept failing until the retry budget ran out.

    Attributes:
        attempts (int): Number of attempts made
        context (str): Description of the operation that failed
    """

    def __init__(self, message: str, attempts: int = 0, context: Optional[str] = None):
        super().__init__(message)
        self.attempts = attempts
        self.context = context


class LedgerWriteError(OrderCaptureError):
    """The primary ledger could not be read or written."""


class WorkflowEngineError(OrderCaptureError):
    """The external workflow engine failed or could not be reached."""


class ConflictWarning(UserWarning):
    """A write matched an existing order id and was applied as an update."""
