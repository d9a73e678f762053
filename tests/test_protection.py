"""
Tests for protection schemes and payload sealing.

Tests cover:
- ProtectionParameter secret handling (copy, destroy, repr)
- Sealing and unsealing with AEAD ciphers
- Clear, masked and key-pair key derivation
- Scheme registry lookups
"""
import os

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from credstore.exceptions import (
    CorruptContainer,
    IntegrityError,
    InvalidConfiguration,
    InvalidState,
    UnsupportedAlgorithm,
)
from credstore.protection import (
    CLEAR,
    KEY_PAIR,
    MASKED_SHA256,
    MASKED_SHA512,
    MIN_ITERATIONS,
    ClearPasswordScheme,
    KeyEncryptionKey,
    ProtectionParameter,
    SchemeRegistry,
    default_registry,
    seal,
    unseal,
)

TEST_ITERATIONS = 1000


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def kek():
    return KeyEncryptionKey(os.urandom(32))


# --- ProtectionParameter ---

class TestProtectionParameter:
    """Tests for secret handling in ProtectionParameter."""

    def test_string_secret_is_encoded(self):
        """String secrets are stored as UTF-8 bytes."""
        parameter = ProtectionParameter.clear("test")
        assert parameter.secret == b"test"
        assert parameter.algorithm == CLEAR

    def test_repr_hides_secret(self):
        """repr() never shows the secret."""
        parameter = ProtectionParameter.masked("hunter2")
        assert "hunter2" not in repr(parameter)
        assert MASKED_SHA256 in repr(parameter)

    def test_destroy_zeroes_secret(self):
        """Destroying a parameter wipes its secret."""
        parameter = ProtectionParameter.clear("test")
        parameter.destroy()
        assert parameter.destroyed is True
        assert bytes(parameter._secret) == b"\x00" * 4
        with pytest.raises(InvalidState):
            parameter.secret

    def test_copy_is_independent(self):
        """Destroying a copy leaves the original usable."""
        parameter = ProtectionParameter.masked("hunter2", iterations=5000)
        clone = parameter.copy()
        clone.destroy()
        assert parameter.secret == b"hunter2"
        assert parameter.options == {"iterations": 5000}

    def test_descriptor_omits_secrets(self, encrypted_rsa_pem):
        """Descriptor drops the secret and the key passphrase."""
        parameter = ProtectionParameter.key_pair(encrypted_rsa_pem, passphrase="open sesame")
        descriptor = parameter.descriptor()
        assert descriptor == {"algorithm": KEY_PAIR}


# --- Sealing ---

class TestSealing:
    """Tests for seal/unseal."""

    def test_round_trip(self, kek):
        """Test seal/unseal round trip."""
        blob = seal(kek, b"s3cr3t")
        assert b"s3cr3t" not in blob
        assert unseal(kek, blob) == b"s3cr3t"

    def test_nonce_is_random(self, kek):
        """Sealing twice gives different blobs."""
        assert seal(kek, b"same") != seal(kek, b"same")

    def test_wrong_key_fails(self, kek):
        """A different key cannot open the blob."""
        blob = seal(kek, b"s3cr3t")
        with pytest.raises(IntegrityError):
            unseal(KeyEncryptionKey(os.urandom(32)), blob)

    def test_tampered_blob_fails(self, kek):
        """Flipping a ciphertext byte is detected."""
        blob = bytearray(seal(kek, b"s3cr3t"))
        blob[-1] ^= 0x01
        with pytest.raises(IntegrityError):
            unseal(kek, bytes(blob))

    def test_short_blob_fails(self, kek):
        """Blobs shorter than nonce and tag are rejected."""
        with pytest.raises(IntegrityError, match="too short"):
            unseal(kek, b"\x00" * 10)

    def test_associated_data_must_match(self, kek):
        """Associated data is authenticated."""
        blob = seal(kek, b"s3cr3t", b"db-pass")
        with pytest.raises(IntegrityError):
            unseal(kek, blob, b"other-alias")

    def test_chacha20_cipher(self):
        """Test ChaCha20-Poly1305 as the AEAD cipher."""
        kek = KeyEncryptionKey(os.urandom(32), "chacha20")
        assert unseal(kek, seal(kek, b"payload")) == b"payload"

    def test_unknown_cipher(self):
        """Unknown ciphers are rejected."""
        with pytest.raises(UnsupportedAlgorithm):
            KeyEncryptionKey(os.urandom(32), "rot13")

    def test_destroyed_key_unusable(self, kek):
        """A destroyed KEK raises InvalidState."""
        kek.destroy()
        with pytest.raises(InvalidState):
            seal(kek, b"payload")


# --- Schemes ---

class TestClearPassword:
    """Tests for the clear password scheme."""

    def test_derivation_is_deterministic(self, registry):
        """Same password, same key."""
        scheme = registry.get(CLEAR)
        parameter = ProtectionParameter.clear("test")
        first = scheme.derive(parameter, {})
        second = scheme.derive(parameter, {})
        assert first.subkey("compare") == second.subkey("compare")

    def test_key_alias_separates_keys(self, registry):
        """Different key aliases derive different keys."""
        scheme = registry.get(CLEAR)
        parameter = ProtectionParameter.clear("test")
        first = scheme.derive(parameter, {}, key_alias="cs_key")
        second = scheme.derive(parameter, {}, key_alias="other")
        assert first.subkey("compare") != second.subkey("compare")

    def test_empty_secret_rejected(self, registry):
        """Empty passwords fail validation."""
        with pytest.raises(InvalidConfiguration):
            registry.get(CLEAR).validate(ProtectionParameter.clear(""))

    def test_wrap_and_unwrap(self, registry):
        """Test wrap/unwrap through the scheme."""
        scheme = registry.get(CLEAR)
        kek = scheme.derive(ProtectionParameter.clear("test"), {})
        blob = scheme.wrap(kek, b"passw0rd", b"my-alias")
        assert scheme.unwrap(kek, blob, b"my-alias") == b"passw0rd"


class TestMaskedPassword:
    """Tests for PBKDF2-based masked password schemes."""

    @pytest.mark.parametrize("algorithm", [MASKED_SHA256, MASKED_SHA512])
    def test_new_params_carry_salt_and_iterations(self, registry, algorithm):
        """New stores get a fresh salt and the iteration count."""
        parameter = ProtectionParameter.masked("hunter2", algorithm, TEST_ITERATIONS)
        params = registry.get(algorithm).new_params(parameter)
        assert params["iterations"] == TEST_ITERATIONS
        assert isinstance(params["salt"], str)

    def test_same_params_same_key(self, registry, masked):
        """Persisted params reproduce the key."""
        scheme = registry.get(MASKED_SHA256)
        params = scheme.new_params(masked)
        first = scheme.derive(masked, params)
        second = scheme.derive(masked, params)
        assert first.subkey("compare") == second.subkey("compare")

    def test_fresh_salt_changes_key(self, registry, masked):
        """A new salt gives a new key."""
        scheme = registry.get(MASKED_SHA256)
        first = scheme.derive(masked, scheme.new_params(masked))
        second = scheme.derive(masked, scheme.new_params(masked))
        assert first.subkey("compare") != second.subkey("compare")

    def test_wrong_password_gives_other_key(self, registry, masked):
        """A wrong password derives a key that cannot unwrap."""
        scheme = registry.get(MASKED_SHA256)
        params = scheme.new_params(masked)
        kek = scheme.derive(masked, params)
        blob = scheme.wrap(kek, b"s3cr3t")
        wrong = ProtectionParameter.masked("hunter3", iterations=TEST_ITERATIONS)
        with pytest.raises(IntegrityError):
            scheme.unwrap(scheme.derive(wrong, params), blob)

    def test_iterations_below_minimum(self, registry):
        """Iteration counts below the minimum are rejected."""
        parameter = ProtectionParameter.masked("hunter2", iterations=MIN_ITERATIONS - 1)
        with pytest.raises(InvalidConfiguration, match="at least"):
            registry.get(MASKED_SHA256).validate(parameter)

    @pytest.mark.parametrize("value", ["many", 1000.9, "1000.9", "-1000", True])
    def test_iterations_not_a_number(self, registry, value):
        """Iteration counts must be integers or digit strings, never coerced."""
        parameter = ProtectionParameter(MASKED_SHA256, "hunter2", iterations=value)
        with pytest.raises(InvalidConfiguration, match="integer"):
            registry.get(MASKED_SHA256).validate(parameter)

    def test_iterations_digit_string(self, registry):
        """Digit strings, as read from attributes, are accepted."""
        parameter = ProtectionParameter(MASKED_SHA256, "hunter2", iterations="2000")
        params = registry.get(MASKED_SHA256).new_params(parameter)
        assert params["iterations"] == 2000

    def test_corrupt_salt(self, registry, masked):
        """A malformed salt in the header is a corrupt container."""
        with pytest.raises(CorruptContainer):
            registry.get(MASKED_SHA256).derive(
                masked, {"salt": "!!!", "iterations": TEST_ITERATIONS},
            )


class TestKeyPair:
    """Tests for the RSA key-pair scheme."""

    def test_derive_unwraps_data_key(self, registry, rsa_pem):
        """The wrapped data key opens with the private key."""
        scheme = registry.get(KEY_PAIR)
        parameter = ProtectionParameter.key_pair(rsa_pem)
        params = scheme.new_params(parameter)
        assert set(params) == {"wrapped_key", "fingerprint"}
        first = scheme.derive(parameter, params)
        second = scheme.derive(parameter, params)
        assert first.subkey("compare") == second.subkey("compare")

    def test_other_key_pair_rejected(self, registry, rsa_pem, other_rsa_pem):
        """A different key pair fails the fingerprint check."""
        scheme = registry.get(KEY_PAIR)
        params = scheme.new_params(ProtectionParameter.key_pair(rsa_pem))
        with pytest.raises(IntegrityError, match="does not match"):
            scheme.derive(ProtectionParameter.key_pair(other_rsa_pem), params)

    def test_encrypted_key_with_passphrase(self, registry, encrypted_rsa_pem):
        """Test a passphrase-protected PEM."""
        scheme = registry.get(KEY_PAIR)
        parameter = ProtectionParameter.key_pair(encrypted_rsa_pem, "open sesame")
        scheme.validate(parameter)
        kek = scheme.derive(parameter, scheme.new_params(parameter))
        assert kek.cipher == "aesgcm"

    def test_wrong_passphrase(self, registry, encrypted_rsa_pem):
        """A wrong PEM passphrase is a configuration error."""
        parameter = ProtectionParameter.key_pair(encrypted_rsa_pem, "wrong")
        with pytest.raises(InvalidConfiguration):
            registry.get(KEY_PAIR).validate(parameter)

    def test_not_a_pem(self, registry):
        """Garbage key material is a configuration error."""
        with pytest.raises(InvalidConfiguration):
            registry.get(KEY_PAIR).validate(ProtectionParameter.key_pair(b"garbage"))

    def test_non_rsa_key(self, registry):
        """Only RSA key pairs are supported."""
        pem = ed25519.Ed25519PrivateKey.generate().private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        with pytest.raises(UnsupportedAlgorithm):
            registry.get(KEY_PAIR).validate(ProtectionParameter.key_pair(pem))


# --- Registry ---

class TestSchemeRegistry:
    """Tests for SchemeRegistry."""

    def test_default_registry_contents(self, registry):
        """Test the built-in algorithm ids."""
        assert registry.algorithms() == sorted(
            [CLEAR, MASKED_SHA256, MASKED_SHA512, KEY_PAIR]
        )

    def test_registries_are_independent(self):
        """Each call builds a new registry."""
        assert default_registry() is not default_registry()

    def test_unknown_algorithm(self, registry):
        """Unknown algorithm ids raise UnsupportedAlgorithm naming the known ones."""
        with pytest.raises(UnsupportedAlgorithm, match="masked-MD5-DES") as exc:
            registry.get("masked-MD5-DES")
        assert exc.value.supported == tuple(registry.algorithms())
        assert MASKED_SHA256 in str(exc.value)

    def test_duplicate_registration(self):
        """Registering an id twice is rejected."""
        registry = SchemeRegistry([ClearPasswordScheme()])
        with pytest.raises(InvalidConfiguration, match="already registered"):
            registry.register(ClearPasswordScheme())

    def test_contains(self, registry):
        """Test membership checks."""
        assert CLEAR in registry
        assert "nope" not in registry

    def test_cipher_lookup(self, registry):
        """Test cipher lookup by name."""
        assert registry.cipher("chacha20") == "chacha20"
        with pytest.raises(UnsupportedAlgorithm):
            registry.cipher("AES/CBC/NoPadding")
