"""
Pytest Configuration and Fixtures
"""

import os
import sys

import pkcs11
import pytest
import structlog

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

from fake_hsm import TEST_KEY_BITS, FakeDevice  # noqa: E402
from hsm.config import HSMConfig  # noqa: E402


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's HSM_* variables out of the tests."""
    for name in ("HSM_MODULE_PATH", "HSM_PIN", "HSM_TOKEN_LABEL", "HSM_SLOT"):
        monkeypatch.delenv(name, raising=False)
    yield
    # The CLI binds structlog to the captured stderr of the test that ran it
    structlog.reset_defaults()


@pytest.fixture
def device(monkeypatch):
    """A fake token patched in as the PKCS#11 module."""
    fake = FakeDevice()
    monkeypatch.setattr(pkcs11, "lib", fake.load)
    monkeypatch.setattr(pkcs11, "unload", fake.unload)
    return fake


@pytest.fixture
def config(device):
    return HSMConfig(module_path=device.module_path, pin=device.pin)


@pytest.fixture
def keypair(device, config):
    """A stored keypair labelled MyRSAKey / MyRSAKey-public."""
    from hsm.operations import generate_keypair

    generate_keypair(config, "MyRSAKey", key_bits=TEST_KEY_BITS)
    return "MyRSAKey"
