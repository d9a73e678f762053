"""
Store Configuration — Attribute allow-list, defaults and validation.

Attribute maps use the names of the KeyStoreCredentialStore backend:

    location         path of the container file         (required)
    create           create the store when missing      (default false)
    modifiable       allow store/remove                 (default true)
    keyStoreType     container format tag               (default JCEKS)
    keyAlias         alias bound into the KEK           (default cs_key)
    cryptoAlgorithm  AEAD cipher for entries            (default aesgcm)
    externalPath     keep entries in a separate file    (default unset)

Boolean attributes accept only "true" or "false", in any letter case.
"""
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import InvalidConfiguration
from .protection import (
    DEFAULT_CIPHER,
    DEFAULT_KEY_ALIAS,
    ProtectionParameter,
    ProtectionScheme,
    SchemeRegistry,
    default_registry,
)

logger = logging.getLogger("credstore")

KEY_STORE_CREDENTIAL_STORE = "KeyStoreCredentialStore"

# attribute name -> StoreConfig field
ATTRIBUTE_FIELDS: dict[str, str] = {
    "location": "location",
    "create": "create",
    "modifiable": "modifiable",
    "keyStoreType": "key_store_type",
    "keyAlias": "key_alias",
    "cryptoAlgorithm": "crypto_algorithm",
    "externalPath": "external_path",
}

VALID_ATTRIBUTES: dict[str, frozenset[str]] = {
    KEY_STORE_CREDENTIAL_STORE: frozenset(ATTRIBUTE_FIELDS),
}

KEY_STORE_TYPES = ("JCEKS", "PKCS12", "JKS")
DEFAULT_KEY_STORE_TYPE = "JCEKS"


class StoreConfig(BaseModel):
    """Validated credential store configuration."""

    store_type: str = Field(default=KEY_STORE_CREDENTIAL_STORE)
    location: Path
    create: bool = Field(default=False)
    modifiable: bool = Field(default=True)
    key_store_type: str = Field(default=DEFAULT_KEY_STORE_TYPE, alias="keyStoreType")
    key_alias: str = Field(default=DEFAULT_KEY_ALIAS, alias="keyAlias", min_length=1)
    crypto_algorithm: str = Field(default=DEFAULT_CIPHER, alias="cryptoAlgorithm")
    external_path: Optional[Path] = Field(default=None, alias="externalPath")

    model_config = {"frozen": True, "populate_by_name": True, "extra": "forbid"}

    @field_validator("create", "modifiable", mode="before")
    @classmethod
    def parse_boolean(cls, v: Any) -> bool:
        """Accept real booleans or the strings true/false only."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str) and v.lower() in ("true", "false"):
            return v.lower() == "true"
        raise ValueError(f"expected 'true' or 'false', got {v!r}")

    @field_validator("location", "external_path", mode="before")
    @classmethod
    def non_empty_path(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            raise ValueError("path must not be empty")
        return v

    @field_validator("key_store_type")
    @classmethod
    def validate_key_store_type(cls, v: str) -> str:
        normalized = v.upper()
        if normalized not in KEY_STORE_TYPES:
            raise ValueError(
                f"Unsupported keyStoreType {v!r} (valid: {', '.join(KEY_STORE_TYPES)})"
            )
        return normalized

    @model_validator(mode="after")
    def validate_external_path(self) -> "StoreConfig":
        """externalPath must not point at the key container itself."""
        if self.external_path is not None and self.external_path == self.location:
            raise ValueError("externalPath must differ from location")
        return self

    @property
    def external(self) -> bool:
        return self.external_path is not None

    def attributes(self) -> dict[str, str]:
        """Render the resolved configuration back to an attribute map."""
        values = {
            "location": str(self.location),
            "create": str(self.create).lower(),
            "modifiable": str(self.modifiable).lower(),
            "keyStoreType": self.key_store_type,
            "keyAlias": self.key_alias,
            "cryptoAlgorithm": self.crypto_algorithm,
        }
        if self.external_path is not None:
            values["externalPath"] = str(self.external_path)
        return values


def _describe(err: ValidationError) -> str:
    messages = []
    for error in err.errors():
        where = ".".join(str(part) for part in error["loc"]) or "config"
        messages.append(f"{where}: {error['msg']}")
    return "; ".join(messages)


class StoreConfigResolver:
    """Validates raw attribute maps and protection parameters.

    Every check here runs before the store touches the filesystem.
    """

    def __init__(self, registry: Optional[SchemeRegistry] = None):
        self.registry = registry or default_registry()

    def resolve(
        self,
        raw: Mapping[str, str],
        store_type: str = KEY_STORE_CREDENTIAL_STORE,
    ) -> StoreConfig:
        """Validate and normalize a store attribute map.

        Args:
            raw: Attribute names mapped to string values.
            store_type: Backend whose allow-list applies.

        Returns:
            Validated StoreConfig with defaults applied.

        Raises:
            InvalidConfiguration: Unknown, missing or malformed attribute.
            UnsupportedAlgorithm: Unknown ``cryptoAlgorithm``.
        """
        allowed = VALID_ATTRIBUTES.get(store_type)
        if allowed is None:
            raise InvalidConfiguration(f"Unknown credential store type: {store_type!r}")
        if not isinstance(raw, Mapping):
            raise InvalidConfiguration("Store attributes must be a mapping")
        for name, value in raw.items():
            if name not in allowed:
                raise InvalidConfiguration(
                    f"Unknown attribute {name!r} for {store_type} "
                    f"(valid: {', '.join(sorted(allowed))})"
                )
            if not isinstance(value, str):
                raise InvalidConfiguration(
                    f"Attribute {name!r} must be a string, got {type(value).__name__}"
                )
        if "location" not in raw:
            raise InvalidConfiguration("Attribute 'location' is required")
        if "cryptoAlgorithm" in raw:
            self.registry.cipher(raw["cryptoAlgorithm"])
        fields = {ATTRIBUTE_FIELDS[name]: value for name, value in raw.items()}
        try:
            config = StoreConfig(store_type=store_type, **fields)
        except ValidationError as err:
            raise InvalidConfiguration(_describe(err)) from err
        logger.debug(
            "Resolved %s configuration for %s", store_type, config.location,
        )
        return config

    def protection(self, parameter: ProtectionParameter) -> ProtectionScheme:
        """Look up and validate the scheme for a protection parameter.

        Raises:
            UnsupportedAlgorithm: Unknown protection algorithm.
            InvalidConfiguration: Parameter unusable by its scheme.
        """
        scheme = self.registry.get(parameter.algorithm)
        scheme.validate(parameter)
        return scheme
