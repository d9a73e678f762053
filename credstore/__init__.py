"""credstore — Password-protected credential store.

Security Note (Threat Model):
    Unlocked stores keep the key-encryption key in process memory for their
    whole lifetime, and retrieved credentials are plain Python objects. A
    memory dump of the process can expose both. This is an accepted
    limitation; mitigation requires HSM/secure enclave integration which is
    out of scope.
"""

from .version import __version__
from .exceptions import (
    CredentialStoreError,
    InvalidConfiguration,
    UnsupportedAlgorithm,
    NotFound,
    AlreadyInitialized,
    InvalidState,
    NotModifiable,
    IntegrityError,
    CorruptContainer,
    UnsupportedVersion,
    PersistenceError,
)
from .protection import ProtectionParameter, SchemeRegistry, default_registry
from .config import StoreConfig, StoreConfigResolver
from .store import CredentialStore, StoreState
from .recipe import (
    ProtectionType,
    create_credential_store,
    create_from_attributes,
    credential_source_configuration,
    load_from_environment,
    open_from_environment,
)

__all__ = [
    "__version__",
    "CredentialStoreError",
    "InvalidConfiguration",
    "UnsupportedAlgorithm",
    "NotFound",
    "AlreadyInitialized",
    "InvalidState",
    "NotModifiable",
    "IntegrityError",
    "CorruptContainer",
    "UnsupportedVersion",
    "PersistenceError",
    "ProtectionParameter",
    "SchemeRegistry",
    "default_registry",
    "StoreConfig",
    "StoreConfigResolver",
    "CredentialStore",
    "StoreState",
    "ProtectionType",
    "create_credential_store",
    "create_from_attributes",
    "credential_source_configuration",
    "load_from_environment",
    "open_from_environment",
]
