from __future__ import annotations

from typing import Optional


class WebLMError(Exception):
    """Base class for errors raised inside a context before crossing the hub."""


class ConfigError(WebLMError):
    """Provider configuration is missing or unusable (e.g. no API key)."""


class TransportError(WebLMError):
    """Provider replied with a non-success HTTP status, or did not reply at all."""

    def __init__(self, status: int, message: str) -> None:
        """Purpose: Carry the HTTP status and extracted provider message.
        Inputs/Outputs: Inputs are status code and message text; no return value.
        Side Effects / State: Stores status/message for callers and the classifier.
        Dependencies: Raised by ProviderClient; read by MultimodalRejectionClassifier.
        Failure Modes: None.
        If Removed: Callers cannot tell auth failures from capability rejections.
        Testing Notes: str(err) should include the status and the message.
        """
        # Keep both fields so the retry classifier can inspect them.
        super().__init__(f"API request failed ({status}): {message}")
        self.status = status
        self.message = message


class ProtocolError(WebLMError):
    """A stream frame or response body had an unexpected shape."""


class UnsupportedOperationError(WebLMError):
    """Operation needs a capability the current settings disable."""


class CapabilityError(WebLMError):
    """Host capability is missing or gated behind a user gesture."""

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason or message


class GenerationError(WebLMError):
    """Narration script could not be produced or parsed."""


class ParseError(WebLMError):
    """Model reply could not be parsed into the requested structure."""


NEEDS_USER_GESTURE = "needs_user_gesture"

# TransportError status when no HTTP reply arrived (connect failure, timeout).
NO_RESPONSE_STATUS = 0
