"""
Deployment Recipe — Create a store and tell the operator how to unlock it.

Instead of writing the unlock secret into a configuration file, creating a
store produces environment-variable assignments:

    CREDENTIAL_STORE_PROTECTION_ALGORITHM  protection scheme id
    CREDENTIAL_STORE_PROTECTION_PARAMS     masking parameters (empty when clear)
    CREDENTIAL_STORE_PROTECTION            masked or clear secret
    CREDENTIAL_STORE_ATTR_<name>           one per store attribute

``load_from_environment()`` reverses the process.

Security Note:
    Masking is obfuscation under a publicly known key phrase, not
    encryption. Anyone holding the variables can unlock the store.
"""
import os
import re
import sys
import base64
import binascii
import logging
import shlex
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import Optional, TextIO, Union

import orjson
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import InvalidConfiguration, UnsupportedAlgorithm
from .protection import (
    KEY_LENGTH,
    KEY_PAIR,
    MASKED_SHA256,
    MASKED_SHA512,
    KeyEncryptionKey,
    ProtectionParameter,
    SchemeRegistry,
    encode_b64,
    seal,
    unseal,
)
from .store import CredentialStore

logger = logging.getLogger("credstore")

PROTECTION_ALGORITHM_ENV = "CREDENTIAL_STORE_PROTECTION_ALGORITHM"
PROTECTION_PARAMS_ENV = "CREDENTIAL_STORE_PROTECTION_PARAMS"
PROTECTION_ENV = "CREDENTIAL_STORE_PROTECTION"
ATTRIBUTE_ENV_PREFIX = "CREDENTIAL_STORE_ATTR_"

_ATTR_ENV_PATTERN = re.compile(r"^CREDENTIAL_STORE_ATTR_(\w+)$")

RECIPE_BANNER = (
    "In order to use this credential store set the following environment variables"
)

CREDENTIAL_ATTRIBUTES = frozenset({"algorithm", "password", "keyFile", "iterations"})
MASKED_ALGORITHMS = (MASKED_SHA256, MASKED_SHA512)

_MASK_KEY_PHRASE = b"credstore masked protection: obfuscation only"
_MASK_ITERATIONS = 10_000
_MASK_SALT_SIZE = 16

AttributeInput = Union[Mapping[str, str], Iterable[str]]


class ProtectionType(str, Enum):
    """How the unlock secret is rendered in the environment."""

    CLEAR = "clear"
    MASKED = "masked"


# ---------------------------------------------------------------------------
# Attributes
# ---------------------------------------------------------------------------

def parse_attributes(items: AttributeInput) -> dict[str, str]:
    """Parse ``name=value`` items into a mapping.

    Mappings are returned as a copy. Values may contain ``=``.

    Raises:
        InvalidConfiguration: If an item has no ``=`` or no name.
    """
    if isinstance(items, Mapping):
        return dict(items)
    attributes: dict[str, str] = {}
    for position, item in enumerate(items, start=1):
        name, sep, value = item.partition("=")
        name = name.strip()
        if not sep or not name:
            # never echo the item, it may be a password
            raise InvalidConfiguration(
                f"Attribute #{position} must look like name=value"
            )
        attributes[name] = value
    return attributes


def protection_parameter_from_attributes(
    attributes: Mapping[str, str],
) -> ProtectionParameter:
    """Build a protection parameter from credential attributes.

    Recognized attributes: ``algorithm`` (default masked-SHA256-AES-256),
    ``password``, ``keyFile`` (PEM private key, key-pair only) and
    ``iterations`` (PBKDF2 iteration count for a new store).

    Raises:
        InvalidConfiguration: Unknown attribute or missing secret.
        UnsupportedAlgorithm: A masked algorithm id this package does not
            implement; the message names the supported ones.
    """
    unknown = set(attributes) - CREDENTIAL_ATTRIBUTES
    if unknown:
        raise InvalidConfiguration(
            f"Unknown credential attribute(s): {', '.join(sorted(unknown))}"
        )
    algorithm = attributes.get("algorithm", MASKED_SHA256)
    if algorithm.startswith("masked-") and algorithm not in MASKED_ALGORITHMS:
        # e.g. masked-MD5-DES
        raise UnsupportedAlgorithm(algorithm, supported=MASKED_ALGORITHMS)
    if algorithm == KEY_PAIR:
        key_file = attributes.get("keyFile")
        if not key_file:
            raise InvalidConfiguration("key-pair protection requires keyFile")
        try:
            pem = Path(key_file).read_bytes()
        except OSError as err:
            raise InvalidConfiguration(
                f"Unable to read key file {key_file}: {err}"
            ) from err
        return ProtectionParameter.key_pair(pem)
    password = attributes.get("password")
    if not password:
        raise InvalidConfiguration(f"{algorithm} protection requires a password")
    options = {}
    if "iterations" in attributes:
        options["iterations"] = attributes["iterations"]
    return ProtectionParameter(algorithm, password, **options)


# ---------------------------------------------------------------------------
# Masking
# ---------------------------------------------------------------------------

def _mask_key(salt: bytes, iterations: int) -> KeyEncryptionKey:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return KeyEncryptionKey(kdf.derive(_MASK_KEY_PHRASE))


def _env_b64(value: object, name: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidConfiguration(f"{name} is missing or not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise InvalidConfiguration(f"{name} is not valid base64") from err


def mask_secret(secret: bytes, iterations: int = _MASK_ITERATIONS) -> tuple[str, str]:
    """Mask a secret for the environment.

    Returns:
        Tuple of (params, masked) strings: params is base64 JSON holding
        the salt and iteration count, masked is the base64 sealed secret.
    """
    salt = os.urandom(_MASK_SALT_SIZE)
    masked = seal(_mask_key(salt, iterations), secret)
    params = orjson.dumps({"salt": encode_b64(salt), "iterations": iterations})
    return encode_b64(params), encode_b64(masked)


def unmask_secret(params: str, masked: str) -> bytes:
    """Reverse ``mask_secret``.

    Raises:
        InvalidConfiguration: Malformed params or masked value.
        IntegrityError: The masked value was altered.
    """
    try:
        decoded = orjson.loads(_env_b64(params, PROTECTION_PARAMS_ENV))
    except orjson.JSONDecodeError as err:
        raise InvalidConfiguration(f"{PROTECTION_PARAMS_ENV} is not valid JSON") from err
    if not isinstance(decoded, dict):
        raise InvalidConfiguration(f"{PROTECTION_PARAMS_ENV} must hold an object")
    iterations = decoded.get("iterations")
    if not isinstance(iterations, int) or iterations < 1:
        raise InvalidConfiguration(f"{PROTECTION_PARAMS_ENV} has an invalid iteration count")
    salt = _env_b64(decoded.get("salt"), f"{PROTECTION_PARAMS_ENV} salt")
    return unseal(_mask_key(salt, iterations), _env_b64(masked, PROTECTION_ENV))


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

def protection_environment(
    parameter: ProtectionParameter,
    protection_type: Union[ProtectionType, str] = ProtectionType.MASKED,
) -> dict[str, str]:
    """Render a protection parameter as environment variables."""
    protection_type = ProtectionType(protection_type)
    secret = parameter.secret
    if protection_type is ProtectionType.MASKED:
        params, protection = mask_secret(secret)
    else:
        params = ""
        try:
            protection = secret.decode("utf-8")
        except UnicodeDecodeError as err:
            raise InvalidConfiguration(
                "Binary secrets cannot be exported in clear; use masked protection"
            ) from err
    return {
        PROTECTION_ALGORITHM_ENV: parameter.algorithm,
        PROTECTION_PARAMS_ENV: params,
        PROTECTION_ENV: protection,
    }


def credential_source_configuration(
    protection_type: Union[ProtectionType, str],
    credential_attributes: AttributeInput,
) -> dict[str, str]:
    """Environment variables describing how to unlock a store.

    Args:
        protection_type: Rendering of the secret (masked or clear).
        credential_attributes: ``name=value`` items or a mapping, see
            ``protection_parameter_from_attributes``.
    """
    parameter = protection_parameter_from_attributes(
        parse_attributes(credential_attributes)
    )
    try:
        return protection_environment(parameter, protection_type)
    finally:
        parameter.destroy()


def store_attributes_environment(attributes: Mapping[str, str]) -> dict[str, str]:
    """Render store attributes as ``CREDENTIAL_STORE_ATTR_<name>`` variables.

    ``create`` is left out: a deployment must open the existing store.
    """
    return {
        f"{ATTRIBUTE_ENV_PREFIX}{name}": value
        for name, value in attributes.items()
        if name != "create"
    }


def render_recipe(environment: Mapping[str, str]) -> str:
    lines = [f"{RECIPE_BANNER}:", ""]
    lines.extend(
        f"export {name}={shlex.quote(value)}" for name, value in environment.items()
    )
    return "\n".join(lines) + "\n"


def load_from_environment(
    environ: Optional[Mapping[str, str]] = None,
) -> tuple[dict[str, str], ProtectionParameter]:
    """Rebuild store attributes and protection parameter from the environment.

    Returns:
        Tuple of (store attributes, protection parameter).

    Raises:
        InvalidConfiguration: Required variables missing or malformed.
    """
    environ = os.environ if environ is None else environ
    attributes: dict[str, str] = {}
    for name, value in environ.items():
        match = _ATTR_ENV_PATTERN.match(name)
        if match:
            attributes[match.group(1)] = value
    if not attributes:
        raise InvalidConfiguration(
            f"No {ATTRIBUTE_ENV_PREFIX}* variables found in environment"
        )
    algorithm = environ.get(PROTECTION_ALGORITHM_ENV)
    protection = environ.get(PROTECTION_ENV)
    if not algorithm or protection is None:
        raise InvalidConfiguration(
            f"{PROTECTION_ALGORITHM_ENV} and {PROTECTION_ENV} must be set"
        )
    params = environ.get(PROTECTION_PARAMS_ENV, "")
    if params:
        secret = unmask_secret(params, protection)
    else:
        secret = protection.encode("utf-8")
    logger.debug("Loaded %d store attribute(s) from environment", len(attributes))
    return attributes, ProtectionParameter(algorithm, secret)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create_credential_store(
    attributes: Mapping[str, str],
    parameter: ProtectionParameter,
    registry: Optional[SchemeRegistry] = None,
) -> CredentialStore:
    """Initialize a store and flush it so the file exists on disk.

    Returns:
        The initialized store; the caller closes it.
    """
    store = CredentialStore(registry)
    store.initialize(attributes, parameter)
    try:
        store.flush()
    except Exception:
        store.close()
        raise
    return store


def open_from_environment(
    environ: Optional[Mapping[str, str]] = None,
    registry: Optional[SchemeRegistry] = None,
) -> CredentialStore:
    """Open the store described by ``CREDENTIAL_STORE_*`` variables."""
    attributes, parameter = load_from_environment(environ)
    store = CredentialStore(registry)
    try:
        store.initialize(attributes, parameter)
    finally:
        parameter.destroy()
    return store


def create_from_attributes(
    store_attributes: AttributeInput,
    credential_attributes: AttributeInput,
    protection_type: Union[ProtectionType, str] = ProtectionType.MASKED,
    registry: Optional[SchemeRegistry] = None,
    stream: Optional[TextIO] = None,
) -> dict[str, str]:
    """Create a credential store and print its deployment recipe.

    Args:
        store_attributes: Store attributes; ``create`` defaults to true.
        credential_attributes: Credential attributes (algorithm, password...).
        protection_type: Rendering of the secret in the recipe.
        registry: Scheme registry, the built-in one by default.
        stream: Where the recipe goes, ``sys.stdout`` by default.

    Returns:
        The environment variables of the recipe.
    """
    attributes = parse_attributes(store_attributes)
    attributes.setdefault("create", "true")
    parameter = protection_parameter_from_attributes(
        parse_attributes(credential_attributes)
    )
    try:
        store = create_credential_store(attributes, parameter, registry)
        try:
            environment = protection_environment(parameter, protection_type)
            environment.update(store_attributes_environment(store.attributes()))
        finally:
            store.close()
    finally:
        parameter.destroy()
    stream = stream if stream is not None else sys.stdout
    stream.write(render_recipe(environment))
    return environment
