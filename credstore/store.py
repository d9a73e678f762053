"""
CredentialStore — Password-protected credential container on disk.

Provides the public API of the credential store:
- ``initialize(config, parameter)`` — create a new store or load an existing one
- ``store(alias, credential)`` — seal and cache a credential
- ``retrieve(alias)`` — open a cached credential
- ``remove(alias)`` — drop a credential (idempotent)
- ``flush()`` — atomically persist pending changes
- ``change_protection(parameter)`` — re-wrap every credential under a new parameter
- ``close()`` — zero key material and retire the handle

Mutations are write-back: nothing reaches the disk until ``flush()``. A store
handle expects a single writer; callers serialize access to it.

Security Note:
    Never log credential values. Payloads stay sealed in memory and are only
    opened inside ``retrieve()``.
"""
import os
import logging
import tempfile
import contextlib
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import orjson

from . import codec
from .codec import PASSWORD, SECRET_KEY, ContainerHeader, CredentialEntry
from .config import KEY_STORE_CREDENTIAL_STORE, StoreConfig, StoreConfigResolver
from .exceptions import (
    AlreadyInitialized,
    CorruptContainer,
    IntegrityError,
    InvalidConfiguration,
    InvalidState,
    NotFound,
    NotModifiable,
    PersistenceError,
)
from .protection import (
    KeyEncryptionKey,
    ProtectionParameter,
    ProtectionScheme,
    SchemeRegistry,
)

logger = logging.getLogger("credstore")

Credential = Union[str, bytes]

_MAX_ALIAS_LENGTH = 255


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as err:
        raise NotFound(f"Credential store file {path} does not exist") from err
    except OSError as err:
        raise PersistenceError(f"Unable to read credential store {path}: {err}") from err


def _discard(tmp_path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(tmp_path)


def _write_temp(path: Path, payload: bytes) -> str:
    """Write ``payload`` to a synced temp file beside ``path``.

    Returns:
        Name of the temp file. Raises OSError after removing it on failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent,
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError:
        _discard(tmp_path)
        raise
    return tmp_path


def _atomic_write(path: Path, payload: bytes) -> None:
    """Replace ``path`` with ``payload`` without exposing a partial file.

    Writes a temp file in the same directory, fsyncs it and renames it over
    the target. On failure the temp file is removed and the previous file is
    left untouched.

    Raises:
        PersistenceError: If any step fails.
    """
    tmp_path = None
    try:
        tmp_path = _write_temp(path, payload)
        os.replace(tmp_path, path)
    except OSError as err:
        if tmp_path is not None:
            _discard(tmp_path)
        raise PersistenceError(
            f"Unable to write credential store {path}: {err}"
        ) from err


def _restore(path: Path, previous: Optional[bytes]) -> None:
    if previous is None:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
    else:
        _atomic_write(path, previous)


def _atomic_write_pair(
    first: Path, first_payload: bytes, second: Path, second_payload: bytes,
) -> None:
    """Replace two files so that a failure leaves both as they were.

    Both temp files are written and synced before either rename. If the
    second rename fails, ``first`` is put back to its previous content.

    Raises:
        PersistenceError: If any step fails.
    """
    try:
        previous = first.read_bytes()
    except FileNotFoundError:
        previous = None
    except OSError as err:
        raise PersistenceError(
            f"Unable to read credential store {first}: {err}"
        ) from err

    temps: list[str] = []
    try:
        temps.append(_write_temp(first, first_payload))
        temps.append(_write_temp(second, second_payload))
        os.replace(temps[0], first)
    except OSError as err:
        for tmp_path in temps:
            _discard(tmp_path)
        raise PersistenceError(
            f"Unable to write credential store {first}: {err}"
        ) from err

    try:
        os.replace(temps[1], second)
    except OSError as err:
        _discard(temps[1])
        try:
            _restore(first, previous)
        except (OSError, PersistenceError) as restore_err:
            logger.error(
                "Credential store %s left inconsistent with %s",
                second, first,
            )
            raise PersistenceError(
                f"Unable to write credential store {second}: {err}; "
                f"restoring {first} failed: {restore_err}"
            ) from err
        raise PersistenceError(
            f"Unable to write credential store {second}: {err}"
        ) from err


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class CredentialStore:
    """Credential store engine.

    Lifecycle: ``UNINITIALIZED`` → ``INITIALIZED`` (clean or dirty) →
    ``CLOSED``. A closed store rejects every operation.

    In external mode (``externalPath`` configured) the credentials live in
    the external file while ``location`` keeps a header-only container with
    the protection parameters.
    """

    def __init__(
        self,
        registry: Optional[SchemeRegistry] = None,
        store_type: str = KEY_STORE_CREDENTIAL_STORE,
    ):
        self._resolver = StoreConfigResolver(registry)
        self._store_type = store_type
        self._state = StoreState.UNINITIALIZED
        self._config: Optional[StoreConfig] = None
        self._parameter: Optional[ProtectionParameter] = None
        self._scheme: Optional[ProtectionScheme] = None
        self._kek: Optional[KeyEncryptionKey] = None
        self._header: Optional[ContainerHeader] = None
        self._entries: dict[str, CredentialEntry] = {}
        self._dirty = False

    def __repr__(self) -> str:
        location = self._config.location if self._config else None
        return f"<CredentialStore location={location} state={self._state.value}>"

    def __enter__(self) -> "CredentialStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._state is not StoreState.CLOSED:
            self.close()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def config(self) -> StoreConfig:
        self._require_initialized()
        return self._config

    def is_initialized(self) -> bool:
        return self._state is StoreState.INITIALIZED

    def _require_initialized(self) -> None:
        if self._state is StoreState.CLOSED:
            raise InvalidState("Credential store is closed")
        if self._state is StoreState.UNINITIALIZED:
            raise InvalidState("Credential store is not initialized")

    def _require_modifiable(self) -> None:
        self._require_initialized()
        if not self._config.modifiable:
            raise NotModifiable(
                f"Credential store {self._config.location} is not modifiable"
            )

    @staticmethod
    def _validate_alias(alias: str) -> None:
        """Validate a credential alias.

        Raises:
            ValueError: If alias is not a string, empty or too long.
        """
        if not isinstance(alias, str) or not alias:
            raise ValueError("Credential alias must be a non-empty string")
        if len(alias) > _MAX_ALIAS_LENGTH:
            raise ValueError(
                f"Credential alias cannot exceed {_MAX_ALIAS_LENGTH} characters"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        config: Union[StoreConfig, Mapping[str, str]],
        parameter: ProtectionParameter,
    ) -> None:
        """Create a new store or load an existing one.

        Configuration and protection scheme are validated before any I/O.

        Args:
            config: Raw attribute map or an already resolved StoreConfig.
            parameter: Secret unlocking the store. The store keeps its own
                copy, so the caller may reuse or destroy the original.

        Raises:
            AlreadyInitialized: If the store was initialized before.
            InvalidState: If the store is closed.
            InvalidConfiguration: Bad attributes, or a file whose format tag
                or cipher disagrees with the configuration.
            UnsupportedAlgorithm: Unknown protection algorithm or cipher.
            NotFound: File missing and ``create`` is false.
            IntegrityError: Wrong protection parameter.
            CorruptContainer: Damaged or truncated file.
            UnsupportedVersion: File written by an incompatible version.
            PersistenceError: The file could not be read.
        """
        if self._state is StoreState.CLOSED:
            raise InvalidState("Credential store is closed")
        if self._state is StoreState.INITIALIZED:
            raise AlreadyInitialized(
                f"Credential store {self._config.location} is already initialized"
            )
        if not isinstance(config, StoreConfig):
            config = self._resolver.resolve(config, self._store_type)
        cipher = self._resolver.registry.cipher(config.crypto_algorithm)
        scheme = self._resolver.protection(parameter)

        parameter = parameter.copy()
        try:
            if config.location.exists():
                header, entries, kek = self._load(config, scheme, parameter)
                dirty = False
                logger.info(
                    "Loaded credential store %s: %d credential(s)",
                    config.location, len(entries),
                )
            elif config.create:
                header = ContainerHeader(
                    format=config.key_store_type,
                    algorithm=scheme.algorithm,
                    cipher=cipher,
                    params=scheme.new_params(parameter),
                )
                kek = scheme.derive(parameter, header.params, cipher, config.key_alias)
                header.seal_check(kek)
                entries = {}
                dirty = True
                logger.info(
                    "Created credential store %s (%s, %s)",
                    config.location, config.key_store_type, scheme.algorithm,
                )
            else:
                raise NotFound(
                    f"Credential store {config.location} does not exist "
                    "and create=false"
                )
        except Exception:
            parameter.destroy()
            raise

        self._config = config
        self._scheme = scheme
        self._parameter = parameter
        self._kek = kek
        self._header = header
        self._entries = entries
        self._dirty = dirty
        self._state = StoreState.INITIALIZED

    def _check_header(
        self, config: StoreConfig, header: ContainerHeader, scheme: ProtectionScheme
    ) -> None:
        if header.format != config.key_store_type:
            raise InvalidConfiguration(
                f"Credential store {config.location} is a {header.format} store, "
                f"configured keyStoreType is {config.key_store_type}"
            )
        if header.cipher != config.crypto_algorithm:
            raise InvalidConfiguration(
                f"Credential store {config.location} uses cipher {header.cipher!r}, "
                f"configured cryptoAlgorithm is {config.crypto_algorithm!r}"
            )
        if header.algorithm != scheme.algorithm:
            raise IntegrityError(
                f"Credential store {config.location} is protected with "
                f"{header.algorithm!r}, not {scheme.algorithm!r}"
            )

    def _load(
        self,
        config: StoreConfig,
        scheme: ProtectionScheme,
        parameter: ProtectionParameter,
    ) -> tuple[ContainerHeader, dict[str, CredentialEntry], KeyEncryptionKey]:
        data = _read(config.location)
        header, _ = codec.read_header(data)
        self._check_header(config, header, scheme)
        kek = scheme.derive(parameter, header.params, header.cipher, config.key_alias)
        try:
            header, entries = codec.decode(data, kek)
            if config.external:
                if entries:
                    raise CorruptContainer(
                        f"Key container {config.location} unexpectedly holds credentials"
                    )
                external_header, entries = codec.decode(
                    _read(config.external_path), kek,
                )
                if not header.same_protection(external_header):
                    raise CorruptContainer(
                        f"External container {config.external_path} does not "
                        f"belong to {config.location}"
                    )
        except Exception:
            kek.destroy()
            raise
        return header, entries, kek

    def close(self) -> None:
        """Zero key material and move to the terminal ``CLOSED`` state.

        Unflushed changes are discarded.

        Raises:
            InvalidState: If the store is already closed.
        """
        if self._state is StoreState.CLOSED:
            raise InvalidState("Credential store is closed")
        if self._dirty:
            logger.warning(
                "Closing credential store %s with unflushed changes",
                self._config.location,
            )
        if self._kek is not None:
            self._kek.destroy()
        if self._parameter is not None:
            self._parameter.destroy()
        self._kek = None
        self._parameter = None
        self._entries = {}
        self._dirty = False
        self._state = StoreState.CLOSED
        logger.debug("Credential store closed")

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def store(
        self,
        alias: str,
        credential: Credential,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Seal and cache a credential, replacing any entry under ``alias``.

        ``str`` credentials are kept as passwords, ``bytes`` as secret keys.
        No I/O happens until ``flush()``.

        Raises:
            InvalidState: Store not initialized or closed.
            NotModifiable: Store configured with modifiable=false.
            ValueError: Invalid alias or non-JSON metadata.
            TypeError: Credential is neither str nor bytes.
        """
        self._require_modifiable()
        self._validate_alias(alias)
        if isinstance(credential, str):
            credential_type, raw = PASSWORD, credential.encode("utf-8")
        elif isinstance(credential, (bytes, bytearray)):
            credential_type, raw = SECRET_KEY, bytes(credential)
        else:
            raise TypeError(
                f"Credential must be str or bytes, got {type(credential).__name__}"
            )
        metadata = dict(metadata or {})
        try:
            orjson.dumps(metadata)
        except orjson.JSONEncodeError as err:
            raise ValueError("Credential metadata must be JSON serializable") from err

        payload = self._scheme.wrap(self._kek, raw, alias.encode("utf-8"))
        self._entries[alias] = CredentialEntry(
            alias=alias,
            credential_type=credential_type,
            payload=payload,
            metadata=metadata,
        )
        self._dirty = True
        logger.debug("Credential store set: alias=%s", alias)

    def retrieve(self, alias: str) -> Credential:
        """Return the credential stored under ``alias``.

        Raises:
            NotFound: If no credential is stored under ``alias``.
        """
        self._require_initialized()
        entry = self._entries.get(alias)
        if entry is None:
            raise NotFound(f"No credential stored under alias {alias!r}")
        raw = self._scheme.unwrap(self._kek, entry.payload, alias.encode("utf-8"))
        if entry.credential_type == PASSWORD:
            return raw.decode("utf-8")
        return raw

    def metadata(self, alias: str) -> dict[str, Any]:
        self._require_initialized()
        entry = self._entries.get(alias)
        if entry is None:
            raise NotFound(f"No credential stored under alias {alias!r}")
        return dict(entry.metadata)

    def remove(self, alias: str) -> bool:
        """Remove a credential.

        Returns:
            True if a credential was removed, False if ``alias`` was absent.
        """
        self._require_modifiable()
        if self._entries.pop(alias, None) is None:
            return False
        self._dirty = True
        logger.debug("Credential store remove: alias=%s", alias)
        return True

    def exists(self, alias: str) -> bool:
        self._require_initialized()
        return alias in self._entries

    def aliases(self) -> list[str]:
        self._require_initialized()
        return sorted(self._entries)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> bool:
        """Persist pending changes atomically.

        Returns:
            True if the store was written, False if there was nothing to do.

        Raises:
            PersistenceError: If writing fails; the previous files are kept.
        """
        self._require_initialized()
        if not self._dirty:
            return False
        config = self._config
        entries = list(self._entries.values())
        if config.external:
            _atomic_write_pair(
                config.external_path,
                codec.encode(self._header, entries, self._kek),
                config.location,
                codec.encode(self._header, [], self._kek),
            )
        else:
            _atomic_write(
                config.location, codec.encode(self._header, entries, self._kek),
            )
        self._dirty = False
        logger.info(
            "Flushed credential store %s: %d credential(s)",
            config.location, len(entries),
        )
        return True

    def change_protection(self, parameter: ProtectionParameter) -> int:
        """Re-wrap every credential under a new protection parameter.

        The new scheme gets fresh public parameters (salt, data key). The
        change is in memory only until ``flush()``.

        Returns:
            Number of credentials re-wrapped.
        """
        self._require_modifiable()
        scheme = self._resolver.protection(parameter)
        parameter = parameter.copy()
        kek = None
        rewrapped: dict[str, CredentialEntry] = {}
        try:
            header = ContainerHeader(
                format=self._header.format,
                algorithm=scheme.algorithm,
                cipher=self._header.cipher,
                params=scheme.new_params(parameter),
            )
            kek = scheme.derive(
                parameter, header.params, header.cipher, self._config.key_alias,
            )
            header.seal_check(kek)
            for alias, entry in self._entries.items():
                aad = alias.encode("utf-8")
                raw = self._scheme.unwrap(self._kek, entry.payload, aad)
                rewrapped[alias] = CredentialEntry(
                    alias=alias,
                    credential_type=entry.credential_type,
                    payload=scheme.wrap(kek, raw, aad),
                    metadata=dict(entry.metadata),
                )
        except Exception:
            if kek is not None:
                kek.destroy()
            parameter.destroy()
            raise

        previous = self._scheme.algorithm
        self._kek.destroy()
        self._parameter.destroy()
        self._scheme = scheme
        self._kek = kek
        self._parameter = parameter
        self._header = header
        self._entries = rewrapped
        self._dirty = True
        logger.info(
            "Rotated protection of credential store %s from %s to %s "
            "(%d credential(s))",
            self._config.location, previous, scheme.algorithm, len(rewrapped),
        )
        return len(rewrapped)

    # ------------------------------------------------------------------
    # Descriptors
    # ------------------------------------------------------------------

    def attributes(self) -> dict[str, str]:
        """Resolved store attributes, as rendered for operators."""
        return self.config.attributes()

    def protection_descriptor(self) -> dict[str, Any]:
        """Non-secret description of how the store is protected."""
        self._require_initialized()
        return {
            "algorithm": self._header.algorithm,
            "cipher": self._header.cipher,
            "keyAlias": self._config.key_alias,
            "params": dict(self._header.params),
        }
