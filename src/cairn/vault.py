"""Secret sources: environment variables and HashiCorp Vault.

Values read here come back wrapped in Secret, so they are masked in
output and encrypted or redacted when a resource input holding them is
written to state.

Vault secrets are read from the KV v2 engine using the standard
VAULT_ADDR and VAULT_TOKEN environment variables and are referenced as
"path#field" strings.

Requires the `hvac` package for Vault: pip install cairn[vault]
"""

import os
from typing import Any, Mapping

from cairn.exceptions import CairnError
from cairn.secret import Secret


class VaultError(CairnError):
    """Raised when Vault operations fail."""


def secret_from_env(name: str, default: str | None = None) -> Secret:
    """Read an environment variable as a Secret.

    Args:
        name: Environment variable name
        default: Value to use when the variable is not set

    Raises:
        CairnError: If the variable is not set and no default is given
    """
    value = os.environ.get(name, default)
    if value is None:
        raise CairnError(f"Environment variable {name} is not set")
    return Secret(value)


def create_vault_client(environ: Mapping[str, str] | None = None) -> Any:
    """Create an authenticated Vault client from environment variables.

    Uses VAULT_ADDR and VAULT_TOKEN (standard Vault convention).

    Returns:
        Authenticated hvac.Client

    Raises:
        VaultError: If env vars missing or authentication fails
    """
    try:
        import hvac
    except ImportError:
        raise VaultError(
            "hvac package is required for Vault support. "
            "Install with: pip install cairn[vault]"
        ) from None

    environ = os.environ if environ is None else environ
    addr = environ.get("VAULT_ADDR")
    token = environ.get("VAULT_TOKEN")
    if not addr:
        raise VaultError("VAULT_ADDR environment variable is not set")
    if not token:
        raise VaultError("VAULT_TOKEN environment variable is not set")

    client = hvac.Client(url=addr, token=token)
    if not client.is_authenticated():
        raise VaultError(f"Vault authentication failed for {addr}")

    return client


def parse_refs(secret_refs: Mapping[str, str]) -> dict[str, list[tuple[str, str]]]:
    """Group {name: "path#field"} references by Vault path.

    Raises:
        VaultError: If a reference is not in path#field form
    """
    paths: dict[str, list[tuple[str, str]]] = {}
    for name, ref in secret_refs.items():
        if "#" not in ref:
            raise VaultError(
                f"Invalid vault ref '{ref}' for '{name}': expected 'path#field'"
            )
        path, field = ref.rsplit("#", 1)
        paths.setdefault(path, []).append((name, field))
    return paths


def read_vault_secrets(secret_refs: Mapping[str, str], client: Any = None) -> dict[str, Secret]:
    """Read secrets from Vault KV v2 engine.

    Args:
        secret_refs: Mapping of {name: "path#field"} references.
            Example: {"DB_PW": "myapp#db_password"}
            The path is relative to the KV mount (default "secret").
        client: hvac client to use (default: one built from the environment)

    Returns:
        Dict of {name: Secret} with resolved secret values.

    Raises:
        VaultError: If ref format is invalid, path not found, or field missing
    """
    paths = parse_refs(secret_refs)
    if client is None:
        client = create_vault_client()

    results: dict[str, Secret] = {}
    for path, fields in paths.items():
        try:
            response = client.secrets.kv.v2.read_secret_version(
                path=path, raise_on_deleted_version=True
            )
        except Exception as e:
            field_names = ", ".join(name for name, _ in fields)
            raise VaultError(
                f"Failed to read Vault path '{path}' (needed for {field_names}): {e}"
            ) from e

        data = response["data"]["data"]
        for name, field in fields:
            if field not in data:
                available = ", ".join(sorted(data.keys()))
                raise VaultError(
                    f"Field '{field}' not found at Vault path '{path}' "
                    f"(available: {available})"
                )
            results[name] = Secret(data[field])

    return results
