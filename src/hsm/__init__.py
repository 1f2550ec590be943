"""
PKCS#11 HSM Session Manager

Supports:
- RSA keypair generation on the token
- SHA-512 / PKCS#1 v1.5 signing and verification
- Token random number generation
- Public key export as PEM
"""

from .config import HSMConfig, public_label
from .errors import (
    HSMError,
    ModuleLoadError,
    AuthenticationError,
    SessionStateError,
    KeyNotFoundError,
    AmbiguousKeyError,
    KeyGenerationError,
    SigningError,
    VerificationError,
    DecodingError,
    RNGError,
    SerializationError,
    WriteError,
)
from .operations import (
    generate_keypair,
    sign,
    verify,
    verify_hex,
    generate_random,
    export_public_key,
)
from .session import HSMSession, SessionState

__all__ = [
    "HSMConfig",
    "public_label",
    "HSMSession",
    "SessionState",
    "generate_keypair",
    "sign",
    "verify",
    "verify_hex",
    "generate_random",
    "export_public_key",
    "HSMError",
    "ModuleLoadError",
    "AuthenticationError",
    "SessionStateError",
    "KeyNotFoundError",
    "AmbiguousKeyError",
    "KeyGenerationError",
    "SigningError",
    "VerificationError",
    "DecodingError",
    "RNGError",
    "SerializationError",
    "WriteError",
]
