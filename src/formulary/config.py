"""Engine configuration read from `formulary.toml`."""

from collections.abc import Mapping
from pathlib import Path
import tomllib
from typing import Any, Self

from attrs import define, evolve, field, fields

from .exceptions import ConfigError

CONFIG_FILENAME = "formulary.toml"
PREFIX_ENV_VAR = "DESTDIR"

DEFAULT_ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    "USER",
    "LOGNAME",
)


def _default_state_dir() -> Path:
    """Returns the user-specific state directory for receipts, locks and builds."""
    return Path.home() / ".local" / "state" / "formulary"


@define(frozen=True, slots=True)
class EngineConfig:
    prefix: Path = field(factory=lambda: Path("/usr/local"), converter=Path)
    formula_dir: Path = field(factory=lambda: Path("formulae"), converter=Path)
    state_dir: Path = field(factory=_default_state_dir, converter=Path)
    env_allowlist: tuple[str, ...] = field(default=DEFAULT_ENV_ALLOWLIST, converter=tuple)
    output_limit: int = 256 * 1024
    lock_timeout: float = 300.0
    jobs: int = 1
    grace_period: float = 10.0
    keep_build_dir: bool = False

    @property
    def receipts_dir(self) -> Path:
        return self.state_dir / "receipts"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def builds_dir(self) -> Path:
        return self.state_dir / "builds"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base_dir: Path | None = None) -> Self:
        known = {attribute.name for attribute in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")

        values = dict(data)
        for key in ("prefix", "formula_dir", "state_dir"):
            if key in values:
                path = Path(values[key]).expanduser()
                if base_dir is not None and not path.is_absolute():
                    path = base_dir / path
                values[key] = path
        for key in ("output_limit", "jobs"):
            if key in values and (not isinstance(values[key], int) or values[key] < 1):
                raise ConfigError(f"'{key}' must be a positive integer.")
        for key in ("lock_timeout", "grace_period"):
            if key in values:
                if not isinstance(values[key], (int, float)) or values[key] < 0:
                    raise ConfigError(f"'{key}' must be a non-negative number.")
                values[key] = float(values[key])
        if "env_allowlist" in values:
            allowlist = values["env_allowlist"]
            if not isinstance(allowlist, list) or not all(isinstance(v, str) for v in allowlist):
                raise ConfigError("'env_allowlist' must be a list of strings.")
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> Self:
        """Returns a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return evolve(self, **changes)


def load_config(path: Path | None = None) -> EngineConfig:
    """Loads the `[formulary]` table from `path`, falling back to defaults.

    When `path` is None, `formulary.toml` in the working directory is used if
    present. Relative paths in the file are taken relative to the file.
    """
    explicit = path is not None
    config_path = path or Path.cwd() / CONFIG_FILENAME

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                document = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
        data = document.get("formulary", {})
        if not isinstance(data, dict):
            raise ConfigError(f"[formulary] in {config_path} must be a table.")
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    return EngineConfig.from_mapping(data, base_dir=config_path.parent)
