"""Shared fixtures for the credential store tests."""
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from credstore.protection import ProtectionParameter

# Low iteration count keeps PBKDF2 fast in tests.
TEST_ITERATIONS = 1000


def _rsa_pem(passphrase: bytes = None) -> bytes:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    encryption = (
        serialization.BestAvailableEncryption(passphrase)
        if passphrase else serialization.NoEncryption()
    )
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    )


@pytest.fixture(scope="session")
def rsa_pem():
    """PEM-encoded RSA private key."""
    return _rsa_pem()


@pytest.fixture(scope="session")
def other_rsa_pem():
    """A second, unrelated RSA private key."""
    return _rsa_pem()


@pytest.fixture(scope="session")
def encrypted_rsa_pem():
    """RSA private key protected with the passphrase 'open sesame'."""
    return _rsa_pem(b"open sesame")


@pytest.fixture
def masked():
    """Masked-password parameter for 'hunter2'."""
    return ProtectionParameter.masked("hunter2", iterations=TEST_ITERATIONS)


@pytest.fixture
def location(tmp_path):
    """Path of a not-yet-existing store file."""
    return tmp_path / "credential.store"
