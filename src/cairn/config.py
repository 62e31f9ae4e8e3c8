"""Run configuration for cairn apps.

Settings come from, in order of precedence:

1. Keyword arguments passed to app()
2. CAIRN_* environment variables
3. A YAML file (cairn.yml in the working directory by default)
4. Defaults

Example cairn.yml:
    stage: staging
    state_dir: .cairn
    quiet: false
    log_level: info
"""

import logging
import os
from dataclasses import dataclass, fields
from getpass import getuser
from pathlib import Path
from typing import Any, Mapping

from cairn.exceptions import ConfigError
from cairn.logging import get_level_from_name
from cairn.scope import Phase
from cairn.state import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "cairn.yml"
ENV_PREFIX = "CAIRN_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def default_stage() -> str:
    """Stage used when none is configured: the current user name, or 'dev'."""
    try:
        return getuser() or "dev"
    except (KeyError, OSError):
        return "dev"


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


@dataclass
class CairnConfig:
    """Resolved settings for one app run.

    Attributes:
        stage: Stage name, the scope directly under the app scope
        phase: Run phase (up, destroy, read)
        password: Encrypts secrets in state; without it secrets are redacted
        state_dir: Directory for the file-system state store
        quiet: Suppress console output
        prefix: Identity prefix isolating concurrent runs
        log_level: Logging level name, applied when set
    """

    stage: str = ""
    phase: Phase = Phase.UP
    password: str | None = None
    state_dir: str = DEFAULT_STATE_DIR
    quiet: bool = False
    prefix: str | None = None
    log_level: str | None = None

    def __post_init__(self) -> None:
        if not self.stage:
            self.stage = default_stage()
        try:
            self.phase = Phase(self.phase)
        except ValueError:
            valid = ", ".join(p.value for p in Phase)
            raise ConfigError(f"Invalid phase: {self.phase!r}. Valid phases: {valid}") from None
        self.quiet = _parse_bool("quiet", self.quiet)
        if self.log_level is not None:
            try:
                get_level_from_name(self.log_level)
            except ValueError as e:
                raise ConfigError(str(e)) from e

    def __repr__(self) -> str:
        password = "******" if self.password else None
        return (
            f"CairnConfig(stage={self.stage!r}, phase={self.phase.value!r}, "
            f"password={password}, state_dir={self.state_dir!r}, quiet={self.quiet}, "
            f"prefix={self.prefix!r}, log_level={self.log_level!r})"
        )

    @property
    def log_level_value(self) -> int | None:
        """Numeric logging level, or None when no level is configured."""
        if self.log_level is None:
            return None
        return get_level_from_name(self.log_level)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, leaving the password out."""
        result: dict[str, Any] = {
            "stage": self.stage,
            "phase": self.phase.value,
            "state_dir": self.state_dir,
            "quiet": self.quiet,
        }
        if self.prefix is not None:
            result["prefix"] = self.prefix
        if self.log_level is not None:
            result["log_level"] = self.log_level
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CairnConfig":
        """Create from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(
        cls,
        config_file: str | Path | None = DEFAULT_CONFIG_FILE,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "CairnConfig":
        """Resolve configuration from overrides, environment and file.

        Overrides that are None are ignored so callers can pass their
        keyword arguments straight through.

        Args:
            config_file: YAML file to read if it exists (None to skip)
            environ: Environment mapping (default: os.environ)
            **overrides: Explicit settings

        Returns:
            CairnConfig

        Raises:
            ConfigError: If the file is malformed or a value is invalid
        """
        values: dict[str, Any] = {}
        if config_file is not None:
            values.update(load_file(config_file))
        values.update(load_env(os.environ if environ is None else environ))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(values)


def load_file(path: str | Path) -> dict[str, Any]:
    """Read settings from a YAML file. A missing file yields no settings.

    Raises:
        ConfigError: If the file cannot be parsed or is not a mapping
    """
    import yaml

    path = Path(path)
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.debug(f"Loaded configuration from {path}")
    return data


def load_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Read CAIRN_<FIELD> settings from an environment mapping."""
    values: dict[str, Any] = {}
    for f in fields(CairnConfig):
        name = ENV_PREFIX + f.name.upper()
        if name in environ:
            values[f.name] = environ[name]
    return values
