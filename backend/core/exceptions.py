"""Custom exceptions for the automation engine."""

from typing import Any, Optional


class AutomationError(Exception):
    """Base exception for the automation engine.

    ``retryable`` tells the retry wrapper whether another attempt can
    possibly succeed.
    """

    retryable: bool = True

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class NotFoundError(AutomationError):
    """Resource not found exception."""

    retryable = False

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class ConfigurationError(AutomationError):
    """Bad step config, unregistered table, unknown step type or field."""

    retryable = False


class SafetyBoundaryError(AutomationError):
    """Input rejected before execution (non-read SQL, malformed formula)."""

    retryable = False


class FormulaError(SafetyBoundaryError):
    """Formula contains disallowed characters or does not parse."""


class AggregationFieldError(ConfigurationError):
    """A numeric aggregation was requested over a non-numeric field."""

    def __init__(self, field: str, aggregation: str, detail: str = ""):
        self.field = field
        self.aggregation = aggregation
        message = (
            f"Cannot perform {aggregation} on field '{field}': "
            f"the field does not contain numeric data"
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class UnsupportedIntegrationError(ConfigurationError):
    """Unknown integration type or action."""


class CredentialDecryptionError(AutomationError):
    """Integration credentials could not be decrypted."""

    retryable = False

    def __init__(self, message: str = "credential decryption failed"):
        super().__init__(message)


class IntegrationRequestError(AutomationError):
    """An outbound HTTP call returned a non-success response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class WorkflowExecutionError(AutomationError):
    """A workflow run failed; the failure is already persisted on the run."""

    def __init__(self, message: str, run_id: Optional[str] = None):
        self.run_id = run_id
        super().__init__(message)
