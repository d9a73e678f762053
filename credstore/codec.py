"""
Entry Codec — Container framing, entry records and integrity trailer.

Container layout, version 1 (integers big-endian):

    [magic 4B "CRDS"][version uint16][header_len uint32][header JSON]
    [entry_count uint32]
    entry_count x [record_len uint32][sealed entry record]
    [trailer 32B HMAC-SHA256 over everything before it]

The header is plain JSON: format tag, protection algorithm, cipher, the
scheme's public parameters and ``check``, a sealed canary that tells a wrong
protection parameter apart from a damaged file. Entry records are orjson
objects sealed with the KEK; credential payloads inside them are sealed a
second time with the alias as associated data.

Security Note:
    Never log payloads or record contents. Only aliases and counts.
"""
import struct
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Any

import orjson
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .exceptions import CorruptContainer, IntegrityError, UnsupportedVersion
from .protection import (
    KeyEncryptionKey,
    decode_b64,
    encode_b64,
    seal,
    unseal,
)

logger = logging.getLogger("credstore")

MAGIC = b"CRDS"
VERSION = 1
TRAILER_SIZE = 32  # HMAC-SHA256
CHECK_PLAINTEXT = b"CREDSTORE_OK"

PASSWORD = "password"
SECRET_KEY = "secret-key"
CREDENTIAL_TYPES = frozenset({PASSWORD, SECRET_KEY})

_CHECK_AAD = b"credential-store-check"
_ENTRY_AAD = b"credential-store-entry"
_MAC_CONTEXT = "credential-store-mac"

_PREFIX = struct.Struct("!4sHI")  # magic, version, header_len
_U32 = struct.Struct("!I")


@dataclass
class CredentialEntry:
    """One credential as held in memory: payload stays sealed."""

    alias: str
    credential_type: str
    payload: bytes
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContainerHeader:
    """Public, unencrypted part of a container."""

    format: str
    algorithm: str
    cipher: str
    params: dict[str, Any] = field(default_factory=dict)
    check: bytes = b""
    version: int = VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "algorithm": self.algorithm,
            "cipher": self.cipher,
            "params": self.params,
            "check": encode_b64(self.check),
        }

    @classmethod
    def from_dict(cls, data: Any, version: int = VERSION) -> "ContainerHeader":
        if not isinstance(data, dict):
            raise CorruptContainer("Header must be a JSON object")
        for name in ("format", "algorithm", "cipher"):
            if not isinstance(data.get(name), str):
                raise CorruptContainer(f"Header field {name!r} missing or invalid")
        params = data.get("params", {})
        if not isinstance(params, dict):
            raise CorruptContainer("Header field 'params' must be an object")
        return cls(
            format=data["format"],
            algorithm=data["algorithm"],
            cipher=data["cipher"],
            params=params,
            check=decode_b64(data.get("check"), "check"),
            version=version,
        )

    def seal_check(self, kek: KeyEncryptionKey) -> None:
        self.check = seal(kek, CHECK_PLAINTEXT, _CHECK_AAD)

    def verify(self, kek: KeyEncryptionKey) -> None:
        """Confirm ``kek`` is the key this container was written with.

        Raises:
            IntegrityError: If the canary does not open under ``kek``.
        """
        try:
            plaintext = unseal(kek, self.check, _CHECK_AAD)
        except IntegrityError as err:
            raise IntegrityError(
                "Wrong protection parameter for this credential store"
            ) from err
        if plaintext != CHECK_PLAINTEXT:
            raise IntegrityError("Container verification token mismatch")

    def same_protection(self, other: "ContainerHeader") -> bool:
        return (
            self.algorithm == other.algorithm
            and self.cipher == other.cipher
            and self.params == other.params
        )


# ---------------------------------------------------------------------------
# Entry records
# ---------------------------------------------------------------------------

def encode_entry(entry: CredentialEntry, kek: KeyEncryptionKey) -> bytes:
    """Serialize and seal a single entry record."""
    record = {
        "alias": entry.alias,
        "type": entry.credential_type,
        "payload": encode_b64(entry.payload),
        "metadata": entry.metadata,
    }
    return seal(kek, orjson.dumps(record), _ENTRY_AAD)


def decode_entry(blob: bytes, kek: KeyEncryptionKey) -> CredentialEntry:
    """Open and parse a single entry record.

    Raises:
        IntegrityError: If the record fails authentication.
        CorruptContainer: If the record is not a well-formed entry.
    """
    raw = unseal(kek, blob, _ENTRY_AAD)
    try:
        record = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise CorruptContainer("Entry record is not valid JSON") from err
    if not isinstance(record, dict):
        raise CorruptContainer("Entry record must be a JSON object")
    alias = record.get("alias")
    credential_type = record.get("type")
    metadata = record.get("metadata", {})
    if not isinstance(alias, str) or not alias:
        raise CorruptContainer("Entry record has no alias")
    if credential_type not in CREDENTIAL_TYPES:
        raise CorruptContainer(
            f"Entry {alias!r} has unknown credential type {credential_type!r}"
        )
    if not isinstance(metadata, dict):
        raise CorruptContainer(f"Entry {alias!r} metadata must be an object")
    return CredentialEntry(
        alias=alias,
        credential_type=credential_type,
        payload=decode_b64(record.get("payload"), "payload"),
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

def _mac(kek: KeyEncryptionKey, body: bytes) -> hmac.HMAC:
    h = hmac.HMAC(kek.subkey(_MAC_CONTEXT), hashes.SHA256())
    h.update(body)
    return h


def encode(
    header: ContainerHeader,
    entries: Collection[CredentialEntry],
    kek: KeyEncryptionKey,
) -> bytes:
    """Build a complete container.

    Args:
        header: Header with its verification token already sealed.
        entries: Entries to persist.
        kek: Key-encryption key of the store.

    Returns:
        Container bytes, trailer included.
    """
    header_bytes = orjson.dumps(header.to_dict())
    parts = [
        _PREFIX.pack(MAGIC, VERSION, len(header_bytes)),
        header_bytes,
        _U32.pack(len(entries)),
    ]
    for entry in entries:
        blob = encode_entry(entry, kek)
        parts.append(_U32.pack(len(blob)))
        parts.append(blob)
    body = b"".join(parts)
    return body + _mac(kek, body).finalize()


def read_header(data: bytes) -> tuple[ContainerHeader, int]:
    """Parse the container header without any key.

    Returns:
        Tuple of (header, offset of the entry table).

    Raises:
        CorruptContainer: Bad magic, short data or malformed header.
        UnsupportedVersion: Container written by an incompatible version.
    """
    if len(data) < _PREFIX.size:
        raise CorruptContainer(
            f"Container too short: {len(data)} bytes (minimum {_PREFIX.size})"
        )
    magic, version, header_len = _PREFIX.unpack_from(data)
    if magic != MAGIC:
        raise CorruptContainer("Not a credential store container (bad magic)")
    if version != VERSION:
        raise UnsupportedVersion(version)
    end = _PREFIX.size + header_len
    if end > len(data):
        raise CorruptContainer("Header extends past the end of the container")
    try:
        raw = orjson.loads(data[_PREFIX.size:end])
    except orjson.JSONDecodeError as err:
        raise CorruptContainer("Header is not valid JSON") from err
    return ContainerHeader.from_dict(raw, version), end


def decode(
    data: bytes, kek: KeyEncryptionKey
) -> tuple[ContainerHeader, dict[str, CredentialEntry]]:
    """Verify and parse a complete container.

    Raises:
        IntegrityError: If ``kek`` does not unlock the container.
        CorruptContainer: If the container is truncated, tampered or malformed.
        UnsupportedVersion: If the container version is not supported.
    """
    header, offset = read_header(data)
    header.verify(kek)
    if len(data) < offset + _U32.size + TRAILER_SIZE:
        raise CorruptContainer("Container truncated before the entry table")
    body, trailer = data[:-TRAILER_SIZE], data[-TRAILER_SIZE:]
    try:
        _mac(kek, body).verify(trailer)
    except InvalidSignature as err:
        raise CorruptContainer(
            "Integrity trailer mismatch: container truncated or tampered"
        ) from err

    entries: dict[str, CredentialEntry] = {}
    try:
        (count,) = _U32.unpack_from(body, offset)
        offset += _U32.size
        for _ in range(count):
            (length,) = _U32.unpack_from(body, offset)
            offset += _U32.size
            blob = body[offset:offset + length]
            if len(blob) != length:
                raise CorruptContainer("Entry record truncated")
            offset += length
            entry = decode_entry(blob, kek)
            if entry.alias in entries:
                raise CorruptContainer(f"Duplicate alias {entry.alias!r}")
            entries[entry.alias] = entry
    except struct.error as err:
        raise CorruptContainer("Entry table truncated") from err
    if offset != len(body):
        raise CorruptContainer("Unexpected trailing bytes after the entry table")
    logger.debug("Decoded container with %d entr(ies)", len(entries))
    return header, entries
