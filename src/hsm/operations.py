"""
HSM Operations

The five commands the tool offers. Each call is one complete session
lifecycle: open module, authenticate, resolve key, run one primitive,
release everything. Sessions are never shared between calls.
"""

import hashlib
import os
from pathlib import Path
from typing import Optional, Union

import structlog
from pkcs11 import Attribute, ObjectClass
from pkcs11.exceptions import PKCS11Error

from .config import (
    DEFAULT_KEY_BITS,
    DEFAULT_KEY_TYPE,
    DEFAULT_RANDOM_LENGTH,
    PUBLIC_KEY_SUFFIX,
    SIGNING_MECHANISM,
    HSMConfig,
)
from .encoding import decode_hex, modulus_length, public_key_pem, write_pem
from .errors import (
    DecodingError,
    HSMError,
    KeyGenerationError,
    KeyNotFoundError,
    RNGError,
    SigningError,
    VerificationError,
    WriteError,
)
from .session import HSMSession

logger = structlog.get_logger()

MIN_KEY_BITS = 1024


def _require_label(label: Optional[str], operation: str, error_cls=KeyNotFoundError) -> str:
    if not label or not label.strip():
        raise error_cls("A non-empty key label is required", operation=operation)
    return label


def _key_id(label: str) -> bytes:
    """CKA_ID shared by both halves of a keypair, derived from its label."""
    return hashlib.sha256(label.encode("utf-8")).digest()[:8]


def generate_keypair(config: HSMConfig, label: str, key_bits: int = DEFAULT_KEY_BITS) -> None:
    """
    Create an RSA keypair on the token.

    The private key is stored under ``label`` and the public key under
    ``label + "-public"``. Neither label may already be in use; existing
    keys are never shadowed.
    """
    _require_label(label, "keygen", KeyGenerationError)
    if key_bits < MIN_KEY_BITS:
        raise KeyGenerationError(
            f"Key size must be at least {MIN_KEY_BITS} bits, got {key_bits}",
            operation="keygen",
            label=label,
        )
    pub_label = label + PUBLIC_KEY_SUFFIX
    key_id = _key_id(label)

    with HSMSession(config, operation="keygen") as hsm:
        for existing, object_class in ((label, ObjectClass.PRIVATE_KEY),
                                       (pub_label, ObjectClass.PUBLIC_KEY)):
            if hsm.has_key(existing, object_class):
                raise KeyGenerationError(
                    f"A key labelled {existing!r} already exists",
                    operation="keygen",
                    label=label,
                )
        try:
            hsm.pkcs11_session.generate_keypair(
                DEFAULT_KEY_TYPE,
                key_bits,
                id=key_id,
                label=label,
                store=True,
                public_template={Attribute.LABEL: pub_label},
                private_template={Attribute.LABEL: label},
            )
        except PKCS11Error as e:
            raise KeyGenerationError(
                f"Module refused to generate keypair ({type(e).__name__})",
                operation="keygen",
                label=label,
            ) from e
        hsm.complete()

    logger.info("keypair_generated",
                label=label,
                public_label=pub_label,
                key_type=DEFAULT_KEY_TYPE.name,
                key_bits=key_bits)


def sign(
    config: HSMConfig,
    label: str,
    message: bytes,
    self_check_label: Optional[str] = None,
) -> bytes:
    """
    Sign ``message`` with the private key ``label`` (SHA-512, PKCS#1 v1.5).

    If ``self_check_label`` is given, the signature is verified against that
    public key in a separate session before it is returned; a failed check
    raises VerificationError.
    """
    _require_label(label, "sign")

    with HSMSession(config, operation="sign") as hsm:
        key = hsm.private_key(label)
        try:
            signature = bytes(key.sign(message, mechanism=SIGNING_MECHANISM))
        except PKCS11Error as e:
            raise SigningError(
                f"Module refused to sign ({type(e).__name__})",
                operation="sign",
                label=label,
            ) from e
        hsm.complete()

    logger.info("message_signed", label=label, signature_bytes=len(signature))

    if self_check_label:
        _self_check(config, self_check_label, signature, message)

    return signature


def _self_check(config: HSMConfig, label: str, signature: bytes, message: bytes) -> None:
    try:
        valid = verify(config, label, signature, message)
    except VerificationError:
        raise
    except HSMError as e:
        raise VerificationError(
            f"Self-check against {label!r} could not run: {e.message}",
            operation="sign",
            label=label,
        ) from e
    if not valid:
        raise VerificationError(
            f"Fresh signature does not verify against {label!r}",
            operation="sign",
            label=label,
        )
    logger.info("signature_self_checked", label=label)


def _expected_signature_length(key, label: str) -> int:
    try:
        return modulus_length(key)
    except (KeyError, TypeError, ValueError, PKCS11Error) as e:
        raise VerificationError(
            f"Cannot read the modulus of key {label!r}: {e}",
            operation="verify",
            label=label,
        ) from e


def verify(config: HSMConfig, label: str, signature: bytes, message: bytes) -> bool:
    """
    Check ``signature`` over ``message`` with the public key ``label``.

    Returns False for a well-formed signature that does not verify. A
    signature that cannot be one for this key (empty, wrong length) raises
    DecodingError instead.
    """
    _require_label(label, "verify")
    if not signature:
        raise DecodingError("Signature is empty", operation="verify", label=label)

    with HSMSession(config, operation="verify") as hsm:
        key = hsm.public_key(label)

        # python-pkcs11 reports a bad length as a plain False
        expected = _expected_signature_length(key, label)
        if len(signature) != expected:
            raise DecodingError(
                f"Signature is {len(signature)} bytes; key {label!r} produces {expected}",
                operation="verify",
                label=label,
            )

        try:
            valid = bool(key.verify(message, signature, mechanism=SIGNING_MECHANISM))
        except PKCS11Error as e:
            raise VerificationError(
                f"Module could not verify ({type(e).__name__})",
                operation="verify",
                label=label,
            ) from e
        hsm.complete()

    if valid:
        logger.info("signature_verified", label=label)
    else:
        logger.warning("signature_invalid", label=label)
    return valid


def verify_hex(config: HSMConfig, label: str, signature_hex: str, message: bytes) -> bool:
    """Like verify(), but decodes a hex signature first, before the module is touched."""
    signature = decode_hex(signature_hex, what="signature")
    return verify(config, label, signature, message)


def generate_random(config: HSMConfig, length: int = DEFAULT_RANDOM_LENGTH) -> bytes:
    """Draw ``length`` bytes from the token's random number generator."""
    if length <= 0:
        raise RNGError(f"Random length must be positive, got {length}", operation="random")

    with HSMSession(config, operation="random") as hsm:
        try:
            # python-pkcs11 counts in bits
            data = bytes(hsm.pkcs11_session.generate_random(length * 8))
        except PKCS11Error as e:
            raise RNGError(
                f"Module RNG failed ({type(e).__name__})",
                operation="random",
            ) from e
        if len(data) != length:
            raise RNGError(
                f"Module returned {len(data)} random bytes, wanted {length}",
                operation="random",
            )
        hsm.complete()

    logger.info("random_generated", length=length)
    return data


def default_pem_path(label: str) -> Path:
    """``<label>.pem`` in the working directory; labels holding a path separator are refused."""
    if os.sep in label or (os.altsep and os.altsep in label):
        raise WriteError(
            f"Key label {label!r} cannot be used as a file name; pass --output",
            operation="extract-key",
            label=label,
        )
    return Path(f"{label}.pem")


def export_public_key(
    config: HSMConfig,
    label: str,
    output_path: Optional[Union[str, Path]] = None,
    overwrite: bool = False,
) -> Path:
    """
    Write the public key ``label`` to a PEM file and return its path.

    Nothing is written unless the key resolves and serializes.
    """
    _require_label(label, "extract-key")
    target = Path(output_path) if output_path else default_pem_path(label)

    with HSMSession(config, operation="extract-key") as hsm:
        key = hsm.public_key(label)
        pem = public_key_pem(key, label=label)
        hsm.complete()

    path = write_pem(target, pem, overwrite=overwrite, label=label)
    logger.info("public_key_exported", label=label, path=str(path))
    return path


__all__ = [
    "generate_keypair",
    "sign",
    "verify",
    "verify_hex",
    "generate_random",
    "export_public_key",
    "default_pem_path",
]
