"""
HSM Configuration

Module location, PIN and token selection for one command invocation.
Explicit values win; anything left unset falls back to the environment.
"""

import os
from dataclasses import dataclass
from typing import Optional

from pkcs11 import KeyType, Mechanism

from .errors import AuthenticationError, ModuleLoadError

# Public half of a keypair lives under "<label>-public"
PUBLIC_KEY_SUFFIX = "-public"

DEFAULT_KEY_TYPE = KeyType.RSA
DEFAULT_KEY_BITS = 2048
DEFAULT_RANDOM_LENGTH = 64  # bytes (512 bits)

# SHA-512 digest computed by the module, PKCS#1 v1.5 padding
SIGNING_MECHANISM = Mechanism.SHA512_RSA_PKCS

ENV_MODULE_PATH = "HSM_MODULE_PATH"
ENV_PIN = "HSM_PIN"
ENV_TOKEN_LABEL = "HSM_TOKEN_LABEL"
ENV_SLOT = "HSM_SLOT"


def public_label(label: str) -> str:
    """Label of the public key paired with the private key ``label``."""
    if label.endswith(PUBLIC_KEY_SUFFIX):
        return label
    return label + PUBLIC_KEY_SUFFIX


@dataclass
class HSMConfig:
    """Connection settings for a PKCS#11 module."""
    module_path: Optional[str] = None
    pin: Optional[str] = None
    token_label: Optional[str] = None
    slot: Optional[int] = None

    def __repr__(self) -> str:
        return (
            f"HSMConfig(module_path={self.module_path!r}, pin='***', "
            f"token_label={self.token_label!r}, slot={self.slot!r})"
        )

    @classmethod
    def from_env(
        cls,
        module_path: Optional[str] = None,
        pin: Optional[str] = None,
        token_label: Optional[str] = None,
        slot: Optional[int] = None,
    ) -> "HSMConfig":
        """
        Build a config from explicit values, filling gaps from the environment.

        Empty strings count as unset, so CLI defaults of "" fall through.
        """
        if slot is None:
            raw_slot = os.environ.get(ENV_SLOT, "").strip()
            if raw_slot:
                try:
                    slot = int(raw_slot)
                except ValueError:
                    raise ModuleLoadError(f"{ENV_SLOT} must be an integer, got {raw_slot!r}")

        return cls(
            module_path=module_path or os.environ.get(ENV_MODULE_PATH) or None,
            pin=pin or os.environ.get(ENV_PIN) or None,
            token_label=token_label or os.environ.get(ENV_TOKEN_LABEL) or None,
            slot=slot,
        )

    def validate(self) -> None:
        """Fail before touching the module if required settings are missing."""
        if not self.module_path:
            raise ModuleLoadError(
                f"HSM module location is required (--location or {ENV_MODULE_PATH})"
            )
        if not self.pin:
            raise AuthenticationError(
                f"HSM partition PIN is required (--pin or {ENV_PIN})"
            )
