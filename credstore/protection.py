"""
Protection Schemes — Key-encryption key derivation and payload sealing.

Every scheme turns a ProtectionParameter, together with the public scheme
parameters persisted in the container header, into key material. The key
material is then run through HKDF-SHA256 with a context bound to the store's
key alias, which yields the key-encryption key (KEK):

- clear:                  password → HKDF → KEK
- masked-SHA256-AES-256:  PBKDF2-HMAC-SHA256(password, salt, n) → HKDF → KEK
- masked-SHA512-AES-256:  PBKDF2-HMAC-SHA512(password, salt, n) → HKDF → KEK
- key-pair:               RSA-OAEP-unwrap(data key) → HKDF → KEK

Sealed blobs use the format [nonce 12B][ciphertext + tag 16B].

Security Note:
    Never log secrets, key material, plaintext or ciphertext values.
    ``clear`` performs no key stretching and is meant for tests only.
"""
import os
import base64
import binascii
import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.exceptions import UnsupportedAlgorithm as CryptoUnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import (
    CorruptContainer,
    IntegrityError,
    InvalidConfiguration,
    InvalidState,
    UnsupportedAlgorithm,
)

logger = logging.getLogger("credstore")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16

CLEAR = "clear"
MASKED_SHA256 = "masked-SHA256-AES-256"
MASKED_SHA512 = "masked-SHA512-AES-256"
KEY_PAIR = "key-pair"

DEFAULT_CIPHER = "aesgcm"
DEFAULT_KEY_ALIAS = "cs_key"
DEFAULT_ITERATIONS = 600_000  # OWASP 2023 for PBKDF2-SHA256
MIN_ITERATIONS = 1000

CIPHERS: dict[str, type] = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material.
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def encode_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_b64(value: Any, field: str) -> bytes:
    """Decode a base64 field read back from a container.

    Raises:
        CorruptContainer: If the value is missing or not valid base64.
    """
    if not isinstance(value, str):
        raise CorruptContainer(f"Field {field!r} is missing or not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise CorruptContainer(f"Field {field!r} is not valid base64") from err


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


# ---------------------------------------------------------------------------
# Parameter and key holders
# ---------------------------------------------------------------------------

class ProtectionParameter:
    """Secret material used to unlock a credential store.

    The secret is kept in a ``bytearray`` so ``destroy()`` can zero it.
    Options carry non-persisted extras such as the PBKDF2 iteration count
    for a new store or the passphrase of a PEM private key.
    """

    def __init__(self, algorithm: str, secret: Union[str, bytes], **options: Any):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        self.algorithm = algorithm
        self.options = dict(options)
        self._secret = bytearray(secret)
        self._destroyed = False

    @classmethod
    def clear(cls, password: Union[str, bytes]) -> "ProtectionParameter":
        return cls(CLEAR, password)

    @classmethod
    def masked(
        cls,
        password: Union[str, bytes],
        algorithm: str = MASKED_SHA256,
        iterations: Optional[int] = None,
    ) -> "ProtectionParameter":
        options = {} if iterations is None else {"iterations": iterations}
        return cls(algorithm, password, **options)

    @classmethod
    def key_pair(
        cls,
        private_key_pem: bytes,
        passphrase: Optional[Union[str, bytes]] = None,
    ) -> "ProtectionParameter":
        options = {} if passphrase is None else {"passphrase": passphrase}
        return cls(KEY_PAIR, private_key_pem, **options)

    @property
    def secret(self) -> bytes:
        if self._destroyed:
            raise InvalidState("Protection parameter has been destroyed")
        return bytes(self._secret)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def copy(self) -> "ProtectionParameter":
        return type(self)(self.algorithm, self.secret, **self.options)

    def destroy(self) -> None:
        """Zero the secret; the parameter is unusable afterwards."""
        _zero(self._secret)
        self._destroyed = True

    def descriptor(self) -> dict[str, Any]:
        """Return the non-secret description of this parameter."""
        info = {k: v for k, v in self.options.items() if k != "passphrase"}
        info["algorithm"] = self.algorithm
        return info

    def __repr__(self) -> str:
        return f"<ProtectionParameter algorithm={self.algorithm!r}>"


class KeyEncryptionKey:
    """Derived key wrapping and unwrapping credential payloads."""

    def __init__(self, key: bytes, cipher: str = DEFAULT_CIPHER):
        if cipher not in CIPHERS:
            raise UnsupportedAlgorithm(cipher, "cipher")
        self.cipher = cipher
        self._key = bytearray(key)
        self._destroyed = False

    def _material(self) -> bytes:
        if self._destroyed:
            raise InvalidState("Key-encryption key has been destroyed")
        return bytes(self._key)

    def aead(self) -> Any:
        """Return an AEAD cipher instance bound to this key."""
        return CIPHERS[self.cipher](self._material())

    def subkey(self, context: str) -> bytes:
        """Derive an independent key (e.g. for the container MAC)."""
        return derive_key(self._material(), context)

    def destroy(self) -> None:
        _zero(self._key)
        self._destroyed = True

    def __repr__(self) -> str:
        return f"<KeyEncryptionKey cipher={self.cipher!r}>"


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal(kek: KeyEncryptionKey, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt and authenticate plaintext.

    Format: [nonce 12B][encrypted_payload + tag 16B]
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + kek.aead().encrypt(nonce, plaintext, aad)


def unseal(kek: KeyEncryptionKey, blob: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt a sealed blob.

    Raises:
        IntegrityError: If the blob is malformed or fails authentication.
    """
    _min = NONCE_SIZE + TAG_SIZE
    if len(blob) < _min:
        raise IntegrityError(
            f"Sealed blob too short: {len(blob)} bytes (minimum {_min})"
        )
    try:
        return kek.aead().decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], aad)
    except InvalidTag as err:
        raise IntegrityError("Authentication tag mismatch") from err


# ---------------------------------------------------------------------------
# Schemes
# ---------------------------------------------------------------------------

class ProtectionScheme(ABC):
    """Turns a protection parameter into a key-encryption key."""

    algorithm: str = ""

    def validate(self, parameter: ProtectionParameter) -> None:
        """Check the parameter before any I/O takes place.

        Raises:
            InvalidConfiguration: If the parameter cannot be used.
        """
        if not parameter.secret:
            raise InvalidConfiguration(
                f"{self.algorithm} protection requires a non-empty secret"
            )

    def new_params(self, parameter: ProtectionParameter) -> dict[str, Any]:
        """Public parameters persisted in the header of a new store."""
        return {}

    @abstractmethod
    def key_material(
        self, parameter: ProtectionParameter, params: dict[str, Any]
    ) -> bytes:
        """Return the raw key material for this parameter."""

    def derive(
        self,
        parameter: ProtectionParameter,
        params: dict[str, Any],
        cipher: str = DEFAULT_CIPHER,
        key_alias: str = DEFAULT_KEY_ALIAS,
    ) -> KeyEncryptionKey:
        material = self.key_material(parameter, params)
        return KeyEncryptionKey(
            derive_key(material, f"credential-store:{key_alias}"), cipher
        )

    def wrap(
        self, kek: KeyEncryptionKey, raw: bytes, aad: Optional[bytes] = None
    ) -> bytes:
        return seal(kek, raw, aad)

    def unwrap(
        self, kek: KeyEncryptionKey, blob: bytes, aad: Optional[bytes] = None
    ) -> bytes:
        return unseal(kek, blob, aad)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.algorithm!r}>"


class ClearPasswordScheme(ProtectionScheme):
    algorithm = CLEAR

    def key_material(self, parameter, params):
        return parameter.secret


class MaskedPasswordScheme(ProtectionScheme):
    """PBKDF2-HMAC over the password with a per-store salt."""

    def __init__(self, algorithm: str, hash_cls: type):
        self.algorithm = algorithm
        self._hash_cls = hash_cls

    def _iterations(self, parameter: ProtectionParameter) -> int:
        value = parameter.options.get("iterations", DEFAULT_ITERATIONS)
        if isinstance(value, str) and value.isascii() and value.isdigit():
            iterations = int(value)
        elif isinstance(value, int) and not isinstance(value, bool):
            iterations = value
        else:
            raise InvalidConfiguration(
                f"Iteration count must be an integer, got {value!r}"
            )
        if iterations < MIN_ITERATIONS:
            raise InvalidConfiguration(
                f"Iteration count must be at least {MIN_ITERATIONS}, "
                f"got {iterations}"
            )
        return iterations

    def validate(self, parameter):
        super().validate(parameter)
        self._iterations(parameter)

    def new_params(self, parameter):
        return {
            "salt": encode_b64(os.urandom(SALT_SIZE)),
            "iterations": self._iterations(parameter),
        }

    def key_material(self, parameter, params):
        salt = decode_b64(params.get("salt"), "salt")
        iterations = params.get("iterations")
        if not isinstance(iterations, int) or iterations < MIN_ITERATIONS:
            raise CorruptContainer(f"Invalid iteration count: {iterations!r}")
        kdf = PBKDF2HMAC(
            algorithm=self._hash_cls(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(parameter.secret)


def _fingerprint(public_key: rsa.RSAPublicKey) -> str:
    der = public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


class KeyPairScheme(ProtectionScheme):
    """Random data key wrapped with RSA-OAEP under the store's key pair.

    The parameter secret is a PEM-encoded RSA private key. The header keeps
    the wrapped data key and the public key fingerprint.
    """

    algorithm = KEY_PAIR

    _OAEP = padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )

    def _private_key(self, parameter: ProtectionParameter) -> rsa.RSAPrivateKey:
        passphrase = parameter.options.get("passphrase")
        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")
        try:
            key = serialization.load_pem_private_key(
                parameter.secret, password=passphrase,
            )
        except (ValueError, TypeError, CryptoUnsupportedAlgorithm) as err:
            raise InvalidConfiguration(f"Unable to load key pair: {err}") from err
        if not isinstance(key, rsa.RSAPrivateKey):
            raise UnsupportedAlgorithm(type(key).__name__, "key pair type")
        return key

    def validate(self, parameter):
        self._private_key(parameter)

    def new_params(self, parameter):
        public_key = self._private_key(parameter).public_key()
        wrapped = public_key.encrypt(os.urandom(KEY_LENGTH), self._OAEP)
        return {
            "wrapped_key": encode_b64(wrapped),
            "fingerprint": _fingerprint(public_key),
        }

    def key_material(self, parameter, params):
        key = self._private_key(parameter)
        if params.get("fingerprint") != _fingerprint(key.public_key()):
            raise IntegrityError(
                "Key pair does not match the one protecting this store"
            )
        wrapped = decode_b64(params.get("wrapped_key"), "wrapped_key")
        try:
            return key.decrypt(wrapped, self._OAEP)
        except ValueError as err:
            raise IntegrityError("Unable to unwrap the store data key") from err


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SchemeRegistry:
    """Closed mapping of algorithm identifiers to protection schemes.

    Built explicitly and handed to the resolver and the store; there is no
    process-wide registration.
    """

    def __init__(self, schemes: Iterable[ProtectionScheme] = ()):
        self._schemes: dict[str, ProtectionScheme] = {}
        for scheme in schemes:
            self.register(scheme)

    def register(self, scheme: ProtectionScheme) -> None:
        if not scheme.algorithm:
            raise InvalidConfiguration(f"{scheme!r} has no algorithm identifier")
        if scheme.algorithm in self._schemes:
            raise InvalidConfiguration(
                f"Protection algorithm {scheme.algorithm!r} already registered"
            )
        self._schemes[scheme.algorithm] = scheme

    def get(self, algorithm: str) -> ProtectionScheme:
        """Return the scheme for ``algorithm``.

        Raises:
            UnsupportedAlgorithm: If no scheme is registered under that id.
        """
        try:
            return self._schemes[algorithm]
        except KeyError:
            raise UnsupportedAlgorithm(algorithm, supported=self.algorithms()) from None

    def cipher(self, name: str) -> str:
        """Validate an AEAD cipher identifier.

        Raises:
            UnsupportedAlgorithm: If the cipher is unknown.
        """
        if name not in CIPHERS:
            raise UnsupportedAlgorithm(name, "cipher", sorted(CIPHERS))
        return name

    def algorithms(self) -> list[str]:
        return sorted(self._schemes)

    def __contains__(self, algorithm: object) -> bool:
        return algorithm in self._schemes


def default_registry() -> SchemeRegistry:
    """Build a fresh registry holding every built-in scheme."""
    return SchemeRegistry([
        ClearPasswordScheme(),
        MaskedPasswordScheme(MASKED_SHA256, hashes.SHA256),
        MaskedPasswordScheme(MASKED_SHA512, hashes.SHA512),
        KeyPairScheme(),
    ])
