"""Secret values for cairn.

A Secret marks a value as sensitive. The state serializer encrypts it (when
a password is configured) or redacts it, and the log filter scrubs it from
messages. The wrapped value is only reachable through an explicit unwrap.

Example:
    db_password = secret(os.environ["DB_PASSWORD"])
    await Database("db", password=db_password)

    # inside a handler
    connect(password=Secret.unwrap(props.password))
"""

import base64
import threading
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cairn.exceptions import CairnError

MASK = "******"

# Plaintext of every string secret created in this process, for log scrubbing
_known_values: set[str] = set()
_known_lock = threading.Lock()


def known_secret_values() -> list[str]:
    """Return plaintext values of string secrets, longest first."""
    with _known_lock:
        return sorted(_known_values, key=len, reverse=True)


def redact(text: str) -> str:
    """Replace the plaintext of every known secret in text with the mask."""
    for value in known_secret_values():
        if value in text:
            text = text.replace(value, MASK)
    return text


class _Unwrap:
    """Gives unwrap both call forms: Secret.unwrap(s) and s.unwrap()."""

    def __get__(self, instance: "Secret | None", owner: type) -> Any:
        if instance is None:
            return _unwrap_any
        return instance._reveal


def _unwrap_any(secret_or_value: Any) -> Any:
    """Return the wrapped value, or the argument itself if not a Secret."""
    if isinstance(secret_or_value, Secret):
        return secret_or_value._reveal()
    return secret_or_value


class Secret:
    """Wrapper that flags a value as sensitive.

    Two secrets compare equal when their wrapped values are equal, so a
    handler can compare stored and desired secrets without unwrapping.
    The string forms never contain the value.
    """

    __slots__ = ("_value",)

    def __init__(self, value: Any) -> None:
        if isinstance(value, Secret):
            value = value._value
        self._value = value
        if isinstance(value, str) and value:
            with _known_lock:
                _known_values.add(value)

    unwrap = _Unwrap()

    def _reveal(self) -> Any:
        return self._value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Secret):
            return self._reveal() == other._reveal()
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Secret({MASK})"

    def __str__(self) -> str:
        return MASK

    def __format__(self, format_spec: str) -> str:
        return MASK

    def __bool__(self) -> bool:
        return True

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> Any:
        """Let pydantic models declare ``Secret`` fields.

        Plain values are wrapped; Secret instances pass through unchanged.
        """
        from pydantic_core import core_schema

        return core_schema.no_info_plain_validator_function(
            lambda value: value if isinstance(value, Secret) else cls(value)
        )


class RedactedSecret(Secret):
    """Placeholder for a secret that was stored without a password.

    The real value must be supplied again from its original source; asking
    for it raises CairnError.
    """

    __slots__ = ()

    def __init__(self) -> None:
        self._value = None

    def _reveal(self) -> Any:
        raise CairnError(
            "Secret was redacted from state; pass the value again from its source "
            "or configure a password to store secrets encrypted"
        )

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RedactedSecret)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "Secret(<redacted>)"


def secret(value: Any) -> Secret:
    """Wrap a value as a Secret.

    Args:
        value: Sensitive value; an existing Secret is re-wrapped unchanged

    Returns:
        Secret wrapping value

    Raises:
        CairnError: If value is None
    """
    if value is None:
        raise CairnError("Secret value must not be None")
    return Secret(value)


class SecretCipher:
    """Encrypts secret values for the state store.

    The Fernet key is derived once from the password with PBKDF2-HMAC
    (SHA-256), using the salt to keep keys distinct between apps.
    """

    ITERATIONS = 100_000

    def __init__(self, password: str, salt: str = "cairn") -> None:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=self.ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, value: str) -> str:
        """Encrypt a plaintext string to a Fernet token."""
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token.

        Raises:
            ValueError: If the password is wrong or the token is corrupted
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt secret") from exc
