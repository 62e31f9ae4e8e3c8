"""Tests for handler helpers and secret sources."""

import pytest

from cairn import CairnError, Secret
from cairn.util import ignore
from cairn.vault import VaultError, create_vault_client, parse_refs, read_vault_secrets, secret_from_env


class HttpError(Exception):
    def __init__(self, status):
        super().__init__(f"HTTP {status}")
        self.status = status


class TestIgnore:
    """Tests for ignore()."""

    def test_default_ignores_missing_files(self, tmp_path):
        """Test that FileNotFoundError is suppressed by default."""
        with ignore():
            (tmp_path / "missing").unlink()

    def test_matching_status(self):
        """Test suppressing a matching status."""
        with ignore(404):
            raise HttpError(404)

    def test_other_status_propagates(self):
        """Test that other errors still raise."""
        with pytest.raises(HttpError):
            with ignore(404):
                raise HttpError(500)

    def test_error_without_code(self):
        """Test that errors without codes propagate."""
        with pytest.raises(ValueError):
            with ignore():
                raise ValueError("plain")


class FakeKV:
    def __init__(self, data):
        self.data = data
        self.reads = []

    def read_secret_version(self, path, raise_on_deleted_version=True):
        self.reads.append(path)
        if path not in self.data:
            raise KeyError(path)
        return {"data": {"data": self.data[path]}}


class FakeClient:
    def __init__(self, data):
        self.secrets = type("Secrets", (), {})()
        self.secrets.kv = type("KV", (), {})()
        self.secrets.kv.v2 = FakeKV(data)


class TestSecretSources:
    """Tests for environment and Vault secret sources."""

    def test_secret_from_env(self, monkeypatch):
        """Test wrapping an environment variable."""
        monkeypatch.setenv("CAIRN_TEST_TOKEN", "env-token-123")
        value = secret_from_env("CAIRN_TEST_TOKEN")
        assert isinstance(value, Secret)
        assert value.unwrap() == "env-token-123"

    def test_secret_from_env_missing(self, monkeypatch):
        """Test a missing variable without default."""
        monkeypatch.delenv("CAIRN_TEST_MISSING", raising=False)
        with pytest.raises(CairnError, match="CAIRN_TEST_MISSING"):
            secret_from_env("CAIRN_TEST_MISSING")
        assert secret_from_env("CAIRN_TEST_MISSING", "fallback-value").unwrap() == "fallback-value"

    def test_parse_refs(self):
        """Test grouping references by path."""
        paths = parse_refs({"A": "app#a", "B": "app#b", "C": "db#pw"})
        assert paths == {"app": [("A", "a"), ("B", "b")], "db": [("C", "pw")]}
        with pytest.raises(VaultError, match="expected 'path#field'"):
            parse_refs({"A": "no-field"})

    def test_read_vault_secrets(self):
        """Test resolving references into secrets, one read per path."""
        client = FakeClient({"app": {"a": "vault-a-value", "b": "vault-b-value"}})
        values = read_vault_secrets({"A": "app#a", "B": "app#b"}, client=client)
        assert values["A"] == Secret("vault-a-value")
        assert values["B"].unwrap() == "vault-b-value"
        assert client.secrets.kv.v2.reads == ["app"]

    def test_read_vault_missing_field(self):
        """Test a field absent at the path."""
        client = FakeClient({"app": {"a": "vault-a-value"}})
        with pytest.raises(VaultError, match="available: a"):
            read_vault_secrets({"X": "app#x"}, client=client)

    def test_read_vault_missing_path(self):
        """Test a path Vault cannot read."""
        client = FakeClient({})
        with pytest.raises(VaultError, match="Failed to read Vault path 'app'"):
            read_vault_secrets({"X": "app#x"}, client=client)

    def test_client_requires_environment(self):
        """Test that VAULT_ADDR is required."""
        pytest.importorskip("hvac")
        with pytest.raises(VaultError, match="VAULT_ADDR"):
            create_vault_client(environ={})
