"""
Boundary encodings: hex for signatures and random output, PEM for
exported public keys.
"""

import binascii
from pathlib import Path
from typing import Any, Optional, Union

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pkcs11 import Attribute
from pkcs11.exceptions import PKCS11Error

from .errors import DecodingError, SerializationError, WriteError

logger = structlog.get_logger()


def encode_hex(data: bytes) -> str:
    return data.hex()


def decode_hex(value: str, what: str = "value") -> bytes:
    """
    Decode a hex string, raising DecodingError for anything malformed.

    Surrounding whitespace and an optional 0x prefix are tolerated; empty
    input is not.
    """
    text = (value or "").strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    if not text:
        raise DecodingError(f"Empty hex {what}")
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError) as e:
        raise DecodingError(f"Malformed hex {what}: {e}") from e


def _as_int(value: Union[bytes, int]) -> int:
    if isinstance(value, int):
        return value
    return int.from_bytes(bytes(value), "big")


def rsa_public_key(public_key: Any, label: Optional[str] = None) -> rsa.RSAPublicKey:
    """Rebuild a cryptography RSA public key from a token public key object."""
    try:
        modulus = _as_int(public_key[Attribute.MODULUS])
        exponent = _as_int(public_key[Attribute.PUBLIC_EXPONENT])
        return rsa.RSAPublicNumbers(exponent, modulus).public_key()
    except (KeyError, TypeError, ValueError, PKCS11Error) as e:
        raise SerializationError(
            f"Cannot read RSA public components: {e}",
            operation="extract-key",
            label=label,
        ) from e


def modulus_length(public_key: Any) -> int:
    """Size of the key modulus in bytes; RSA signatures have exactly this length."""
    return (_as_int(public_key[Attribute.MODULUS]).bit_length() + 7) // 8


def public_key_pem(public_key: Any, label: Optional[str] = None) -> bytes:
    """Serialize a token public key as PEM SubjectPublicKeyInfo."""
    key = rsa_public_key(public_key, label=label)
    try:
        return key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    except ValueError as e:
        raise SerializationError(
            f"Cannot encode public key as PEM: {e}",
            operation="extract-key",
            label=label,
        ) from e


def write_pem(path: Union[str, Path], pem: bytes, overwrite: bool = False,
              label: Optional[str] = None) -> Path:
    """Write PEM bytes to ``path``; refuses to clobber an existing file unless asked."""
    target = Path(path)
    mode = "wb" if overwrite else "xb"
    try:
        with open(target, mode) as f:
            f.write(pem)
    except FileExistsError as e:
        raise WriteError(
            f"{target} already exists (use --force to overwrite)",
            operation="extract-key",
            label=label,
        ) from e
    except OSError as e:
        raise WriteError(
            f"Cannot write {target}: {e.strerror or e}",
            operation="extract-key",
            label=label,
        ) from e

    logger.debug("pem_written", path=str(target), size=len(pem))
    return target
