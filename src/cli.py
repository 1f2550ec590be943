"""
HSM Scripts CLI

Signatures with PKCS#1 v1.5 / SHA-512 and random number generation on a
PKCS#11 Hardware Security Module.

Commands:
  keygen       - Generate a new keypair in the HSM
  sign         - Sign a message with a key in the HSM
  verify       - Verify a message signature with a key in the HSM
  random       - Generate random bytes (512 bits by default) in the HSM
  extract-key  - Extract a public key from the HSM as a .pem file

Module location and PIN may also be given as HSM_MODULE_PATH and HSM_PIN.
"""

import argparse
import logging
import os
import sys

import structlog

from hsm import (
    HSMConfig,
    HSMError,
    export_public_key,
    generate_keypair,
    generate_random,
    public_label,
    sign,
    verify_hex,
)
from hsm.config import DEFAULT_KEY_BITS, DEFAULT_RANDOM_LENGTH, PUBLIC_KEY_SUFFIX
from hsm.encoding import encode_hex

logger = structlog.get_logger()

EXIT_ERROR = 1
EXIT_INVALID_SIGNATURE = 3


def configure_logging(verbose: bool = False) -> None:
    """Console logging on stderr; stdout is reserved for command results."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _config(args) -> HSMConfig:
    return HSMConfig.from_env(
        module_path=args.location,
        pin=args.pin,
        token_label=args.token_label,
        slot=args.slot,
    )


def _fail(error: HSMError) -> None:
    logger.error("command_failed", error=error.message, **error.context())
    print(f"Error: {error.message}")
    sys.exit(EXIT_ERROR)


def cmd_keygen(args):
    """Generate a keypair under the given label."""
    logger.info("keygen_requested", label=args.keylabel, key_bits=args.bits)
    try:
        generate_keypair(_config(args), args.keylabel, key_bits=args.bits)
    except HSMError as e:
        _fail(e)

    print("Keypair generated")
    print(f"  Private key: {args.keylabel}")
    print(f"  Public key: {args.keylabel}{PUBLIC_KEY_SUFFIX}")


def cmd_sign(args):
    """Sign a message and print the hex signature."""
    self_check_label = None
    if args.self_check_label:
        self_check_label = args.self_check_label
    elif args.self_check:
        self_check_label = public_label(args.keylabel)

    logger.info("sign_requested", label=args.keylabel, self_check=self_check_label)
    try:
        signature = sign(
            _config(args),
            args.keylabel,
            os.fsencode(args.message),
            self_check_label=self_check_label,
        )
    except HSMError as e:
        _fail(e)

    signature_hex = encode_hex(signature)
    logger.info("signature", value=signature_hex)
    print(signature_hex)


def cmd_verify(args):
    """Verify a hex signature; exit 3 if it does not hold."""
    logger.info("verify_requested", label=args.keylabel)
    try:
        valid = verify_hex(
            _config(args),
            args.keylabel,
            args.signature,
            os.fsencode(args.message),
        )
    except HSMError as e:
        _fail(e)

    if valid:
        print("Signature verified successfully")
    else:
        print("Signature verification failed")
        sys.exit(EXIT_INVALID_SIGNATURE)


def cmd_random(args):
    """Print random bytes from the HSM as hex."""
    logger.info("random_requested", length=args.length)
    try:
        data = generate_random(_config(args), args.length)
    except HSMError as e:
        _fail(e)

    random_hex = encode_hex(data)
    logger.info("random_number", value=random_hex)
    print(random_hex)


def cmd_extract_key(args):
    """Write the public key to a .pem file."""
    logger.info("extract_key_requested", label=args.keylabel, output=args.output)
    try:
        path = export_public_key(
            _config(args),
            args.keylabel,
            output_path=args.output,
            overwrite=args.force,
        )
    except HSMError as e:
        _fail(e)

    print(f"Public key written to {path}")


def build_parser() -> argparse.ArgumentParser:
    # Connection flags shared by every command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-l", "--location", default="", help="HSM module location (PKCS#11 .so)")
    common.add_argument("-p", "--pin", default="", help="HSM partition PIN")
    common.add_argument("--token-label", default="", help="Token label (default: first token present)")
    common.add_argument("--slot", type=int, default=None, help="Slot id (used when no token label is given)")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        description="HSM Scripts - PKCS#1 v1.5 / SHA-512 signatures and random numbers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", parents=[common], help="Generate a new keypair in the HSM")
    keygen_parser.add_argument("-k", "--keylabel", required=True, help="HSM key label")
    keygen_parser.add_argument("--bits", type=int, default=DEFAULT_KEY_BITS, help="RSA modulus size")

    # sign
    sign_parser = subparsers.add_parser("sign", parents=[common], help="Sign a message with a key in the HSM")
    sign_parser.add_argument("-k", "--keylabel", required=True, help="HSM key label")
    sign_parser.add_argument("-m", "--message", required=True, help="Message to sign")
    sign_parser.add_argument("--self-check", action="store_true",
                             help="Verify the new signature against <keylabel>-public")
    sign_parser.add_argument("--self-check-label", default="",
                             help="Verify the new signature against this public key label")

    # verify
    verify_parser = subparsers.add_parser("verify", parents=[common], help="Verify a message with a key in the HSM")
    verify_parser.add_argument("-k", "--keylabel", required=True, help="HSM public key label")
    verify_parser.add_argument("-m", "--message", required=True, help="Message that was signed")
    verify_parser.add_argument("-s", "--signature", required=True, help="Signature to verify (hex)")

    # random
    random_parser = subparsers.add_parser("random", parents=[common], help="Generate random bytes in the HSM")
    random_parser.add_argument("--length", type=int, default=DEFAULT_RANDOM_LENGTH, help="Number of bytes")

    # extract-key
    extract_parser = subparsers.add_parser("extract-key", parents=[common], help="Extract public key from the HSM")
    extract_parser.add_argument("-k", "--keylabel", required=True, help="HSM key label")
    extract_parser.add_argument("-o", "--output", default=None, help="PEM output path (default: <keylabel>.pem)")
    extract_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


COMMANDS = {
    "keygen": cmd_keygen,
    "sign": cmd_sign,
    "verify": cmd_verify,
    "random": cmd_random,
    "extract-key": cmd_extract_key,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    configure_logging(args.verbose)
    handler(args)


if __name__ == "__main__":
    main()
