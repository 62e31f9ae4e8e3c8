"""Snapshot serialization for the state store.

Converts resource inputs and outputs to JSON-compatible structures and
back. Secrets never leave this module in plaintext: they are encrypted
with the configured SecretCipher or replaced by a redaction marker.

Encoded forms:
    Secret (password set)   {"@secret": "<fernet token>"}
    Secret (no password)    {"@secret": null, "redacted": true}
    datetime                {"@date": "2024-01-01T00:00:00+00:00"}
"""

import dataclasses
from collections.abc import Mapping
from datetime import datetime
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel

from cairn.exceptions import StateStoreError
from cairn.secret import RedactedSecret, Secret, SecretCipher

SECRET_KEY = "@secret"
DATE_KEY = "@date"


def serialize(value: Any, cipher: SecretCipher | None = None) -> Any:
    """Convert a value to a JSON-compatible structure.

    Args:
        value: Input or output snapshot (mappings, sequences, pydantic
            models, dataclasses, secrets, datetimes, paths, scalars)
        cipher: Cipher used to encrypt secrets; None redacts them

    Returns:
        JSON-compatible value

    Raises:
        StateStoreError: If a value of an unsupported type is encountered
    """
    if isinstance(value, Secret):
        return _serialize_secret(value, cipher)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return {DATE_KEY: value.isoformat()}
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, BaseModel):
        return serialize(value.model_dump(), cipher)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return serialize(
            {f.name: getattr(value, f.name) for f in dataclasses.fields(value)},
            cipher,
        )
    if isinstance(value, Mapping):
        return {str(k): serialize(v, cipher) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize(v, cipher) for v in value]
    raise StateStoreError(f"Value of type {type(value).__name__} cannot be stored in state")


def _serialize_secret(value: Secret, cipher: SecretCipher | None) -> dict[str, Any]:
    if cipher is None or isinstance(value, RedactedSecret):
        return {SECRET_KEY: None, "redacted": True}
    plaintext = Secret.unwrap(value)
    if not isinstance(plaintext, str):
        raise StateStoreError(
            f"Only string secrets can be encrypted, got {type(plaintext).__name__}"
        )
    return {SECRET_KEY: cipher.encrypt(plaintext)}


def deserialize(value: Any, cipher: SecretCipher | None = None) -> Any:
    """Rebuild a value produced by serialize().

    Args:
        value: JSON-compatible value read from state
        cipher: Cipher used to decrypt secrets

    Returns:
        Value with secrets and datetimes restored. Redacted secrets come
        back as RedactedSecret.

    Raises:
        StateStoreError: If an encrypted secret cannot be decrypted
    """
    if isinstance(value, dict):
        if SECRET_KEY in value:
            return _deserialize_secret(value, cipher)
        if DATE_KEY in value and len(value) == 1:
            return datetime.fromisoformat(value[DATE_KEY])
        return {k: deserialize(v, cipher) for k, v in value.items()}
    if isinstance(value, list):
        return [deserialize(v, cipher) for v in value]
    return value


def _deserialize_secret(value: dict[str, Any], cipher: SecretCipher | None) -> Secret:
    token = value[SECRET_KEY]
    if token is None:
        return RedactedSecret()
    if cipher is None:
        raise StateStoreError("State contains encrypted secrets but no password is configured")
    try:
        return Secret(cipher.decrypt(token))
    except ValueError as e:
        raise StateStoreError(f"Cannot decrypt secret from state: {e}") from e
