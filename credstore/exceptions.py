"""Credential store error taxonomy.

Configuration and algorithm errors are raised before any file I/O or
cryptographic work. Integrity and corruption errors raised while loading
always reach the caller; a store is never silently opened empty.
"""
from collections.abc import Iterable


class CredentialStoreError(Exception):
    """Base class for every credential store failure."""


class InvalidConfiguration(CredentialStoreError, ValueError):
    """A store attribute is unknown, missing or malformed."""


class UnsupportedAlgorithm(CredentialStoreError):
    """Protection scheme or cipher identifier is not registered."""

    def __init__(
        self,
        algorithm: str,
        kind: str = "protection algorithm",
        supported: Iterable[str] = (),
    ):
        self.algorithm = algorithm
        self.supported = tuple(supported)
        message = f"Unsupported {kind}: {algorithm!r}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message)


class NotFound(CredentialStoreError, LookupError):
    """Store file or credential alias does not exist."""


class AlreadyInitialized(CredentialStoreError):
    """initialize() called on a store that is already initialized."""


class InvalidState(CredentialStoreError, RuntimeError):
    """Operation not allowed in the store's current lifecycle state."""


class NotModifiable(InvalidState):
    """Mutation attempted on a store configured with modifiable=false."""


class IntegrityError(CredentialStoreError):
    """Authentication failed: wrong protection parameter or forged blob."""


class CorruptContainer(CredentialStoreError):
    """Container bytes are malformed, truncated or tampered with."""


class UnsupportedVersion(CredentialStoreError):
    """Container was written with a format version this code cannot read."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unsupported container version: {version}")


class PersistenceError(CredentialStoreError):
    """Reading or writing the store file failed."""
