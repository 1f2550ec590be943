"""
HSM Error Taxonomy

One exception class per lifecycle stage that can fail. Every error carries
the operation and key label it happened under so the CLI can log it with
context.
"""

from typing import Optional


class HSMError(Exception):
    """Base class for all HSM failures."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        label: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.label = label

    def context(self) -> dict:
        """Key/value context for structured logging."""
        ctx = {"error_type": type(self).__name__}
        if self.operation:
            ctx["operation"] = self.operation
        if self.label:
            ctx["label"] = self.label
        return ctx


class ModuleLoadError(HSMError):
    """Raised when the PKCS#11 module cannot be loaded or has no usable token."""
    pass


class AuthenticationError(HSMError):
    """Raised when the token rejects the PIN."""
    pass


class SessionStateError(HSMError):
    """Raised when a session is used out of lifecycle order or reused."""
    pass


class KeyNotFoundError(HSMError):
    """Raised when a label does not resolve to a key object."""
    pass


class AmbiguousKeyError(KeyNotFoundError):
    """Raised when a label resolves to more than one key object."""
    pass


class KeyGenerationError(HSMError):
    pass


class SigningError(HSMError):
    pass


class VerificationError(HSMError):
    """Raised when verification cannot complete, or a post-sign self-check fails."""
    pass


class DecodingError(HSMError):
    """Raised for structurally malformed input (bad hex, wrong signature length)."""
    pass


class RNGError(HSMError):
    pass


class SerializationError(HSMError):
    pass


class WriteError(HSMError):
    pass
