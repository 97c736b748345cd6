class StepStreamError(Exception):
    """Base exception class for stepstream errors."""


class StepStreamConfigurationError(StepStreamError):
    """Raised when stepstream is misconfigured or missing required settings."""


class StepStreamValidationError(StepStreamError):
    """Raised when inputs fail validation."""


class StepStreamRuntimeError(StepStreamError):
    """Raised when a research run fails unexpectedly."""


class TransportError(StepStreamRuntimeError):
    """Raised when the research stream cannot be opened or breaks mid-flight."""


class AgentStreamError(StepStreamRuntimeError):
    """Raised when the agent reports an in-band `error` event."""


class HistoryStoreError(StepStreamError):
    """Raised when the history store rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "StepStreamError",
    "StepStreamConfigurationError",
    "StepStreamValidationError",
    "StepStreamRuntimeError",
    "TransportError",
    "AgentStreamError",
    "HistoryStoreError",
]
