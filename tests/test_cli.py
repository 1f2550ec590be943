"""
Tests for the command line front end.
"""

import os

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from cli import EXIT_ERROR, EXIT_INVALID_SIGNATURE, main
from fake_hsm import TEST_KEY_BITS


@pytest.fixture
def base_args(device):
    return ["-l", device.module_path, "-p", device.pin]


def run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr()


def sign_hex(capsys, base_args, label="K1", message="hello"):
    out = run(capsys, "sign", *base_args, "-k", label, "-m", message).out
    return out.strip().splitlines()[-1]


class TestCommands:
    """Test each sub-command end to end."""

    def test_keygen(self, capsys, device, base_args):
        out = run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS)).out

        assert "Keypair generated" in out
        assert "K1-public" in out
        assert len(device.objects) == 2

    def test_sign_prints_hex(self, capsys, device, base_args):
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))

        signature = sign_hex(capsys, base_args)

        assert len(signature) == 2 * TEST_KEY_BITS // 8
        bytes.fromhex(signature)

    def test_sign_with_self_check(self, capsys, device, base_args):
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))

        captured = run(capsys, "sign", *base_args, "-k", "K1", "-m", "hello", "--self-check")

        assert "signature_self_checked" in captured.err

    def test_keygen_sign_verify(self, capsys, device, base_args):
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))
        signature = sign_hex(capsys, base_args)

        out = run(capsys, "verify", *base_args, "-k", "K1-public", "-m", "hello", "-s", signature).out

        assert "Signature verified successfully" in out

    def test_verify_invalid_signature_exit_code(self, capsys, device, base_args):
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))
        signature = sign_hex(capsys, base_args)

        with pytest.raises(SystemExit) as exc_info:
            main(["verify", *base_args, "-k", "K1-public", "-m", "tampered", "-s", signature])

        assert exc_info.value.code == EXIT_INVALID_SIGNATURE
        assert "Signature verification failed" in capsys.readouterr().out

    def test_verify_bad_hex_is_an_error(self, capsys, device, base_args):
        """Malformed hex is reported as an error, distinct from a failed check."""
        with pytest.raises(SystemExit) as exc_info:
            main(["verify", *base_args, "-k", "K1", "-m", "hello", "-s", "zz"])

        assert exc_info.value.code == EXIT_ERROR
        assert "Error: Malformed hex signature" in capsys.readouterr().out
        assert device.loads == 0

    def test_non_utf8_message(self, capsys, device, base_args):
        """Undecodable argv bytes are signed as the raw bytes the shell passed."""
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))
        message = os.fsdecode(b"caf\xe9")

        signature = sign_hex(capsys, base_args, message=message)

        public = device.objects[0]._key
        public.verify(bytes.fromhex(signature), b"caf\xe9", padding.PKCS1v15(), hashes.SHA512())
        out = run(capsys, "verify", *base_args, "-k", "K1", "-m", message, "-s", signature).out
        assert "Signature verified successfully" in out

    def test_random(self, capsys, device, base_args):
        out = run(capsys, "random", *base_args).out.strip()

        assert len(out) == 128
        bytes.fromhex(out)

    def test_random_length(self, capsys, device, base_args):
        out = run(capsys, "random", *base_args, "--length", "8").out.strip()

        assert len(out) == 16

    def test_extract_key(self, capsys, device, base_args, tmp_path):
        run(capsys, "keygen", *base_args, "-k", "K1", "--bits", str(TEST_KEY_BITS))
        target = tmp_path / "K1.pem"

        out = run(capsys, "extract-key", *base_args, "-k", "K1", "-o", str(target)).out

        assert str(target) in out
        assert target.read_bytes().startswith(b"-----BEGIN PUBLIC KEY-----")


class TestFailures:
    """Test error reporting."""

    def test_missing_key(self, capsys, device, base_args):
        with pytest.raises(SystemExit) as exc_info:
            main(["sign", *base_args, "-k", "ghost", "-m", "hello"])

        assert exc_info.value.code == EXIT_ERROR
        captured = capsys.readouterr()
        assert "Error:" in captured.out
        assert "command_failed" in captured.err
        assert "KeyNotFoundError" in captured.err

    def test_wrong_pin(self, capsys, device):
        with pytest.raises(SystemExit) as exc_info:
            main(["random", "-l", device.module_path, "-p", "0000"])

        assert exc_info.value.code == EXIT_ERROR
        assert "PIN rejected" in capsys.readouterr().out

    def test_pin_is_never_logged(self, capsys, device, base_args):
        captured = run(capsys, "random", *base_args, "-v")

        assert "session_state" in captured.err
        assert device.pin not in captured.err

    def test_environment_configuration(self, capsys, device, monkeypatch):
        monkeypatch.setenv("HSM_MODULE_PATH", device.module_path)
        monkeypatch.setenv("HSM_PIN", device.pin)

        out = run(capsys, "random").out.strip()

        assert len(out) == 128

    def test_no_command(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == EXIT_ERROR
