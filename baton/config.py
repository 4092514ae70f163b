"""
Configuration management for baton.

Loads backend settings from $BATON_HOME/config.yaml. Every setting has a
documented default, so a missing file is not an error.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml

from baton.errors import ConfigError
from baton.utils import parse_duration


DEFAULT_AUTO_BLOB_THRESHOLD = 64 * 1024
DEFAULT_CLEANUP_AGE = timedelta(days=3)
BACKENDS = ("file", "memory")

DEFAULT_CONFIG_YAML = """\
# baton configuration
backend: file
# Relative paths are resolved against BATON_HOME
base_path: jobs
# Scalar values larger than this many bytes are stored out-of-line (0 disables)
auto_blob_threshold: 65536
# Jobs not modified for this long are removed by `baton cleanup`
cleanup_age: 3d
log_level: INFO
log_format: structured
"""


def get_baton_home() -> Path:
    """Return the baton home directory ($BATON_HOME, default ~/.baton)."""
    home = os.environ.get("BATON_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".baton"


@dataclass
class BatonConfig:
    """
    Backend and runtime settings.

    Attributes:
        base_path: Root directory for the file backend
        backend: "file" or "memory"
        auto_blob_threshold: Byte size above which scalar values go out-of-line;
            0 disables automatic blobbing
        cleanup_age: Records untouched for longer than this are swept
        log_level: Logging level name
        log_format: "structured" or "pretty"
    """
    base_path: Path = field(default_factory=lambda: get_baton_home() / "jobs")
    backend: str = "file"
    auto_blob_threshold: int = DEFAULT_AUTO_BLOB_THRESHOLD
    cleanup_age: timedelta = DEFAULT_CLEANUP_AGE
    log_level: str = "INFO"
    log_format: str = "structured"

    def __post_init__(self):
        self.base_path = Path(self.base_path)
        self.validate()

    def validate(self) -> None:
        """Validate settings, raising ConfigError on the first problem."""
        if self.backend not in BACKENDS:
            raise ConfigError(
                f"Unknown backend '{self.backend}' (expected one of: {', '.join(BACKENDS)})"
            )
        if (
            isinstance(self.auto_blob_threshold, bool)
            or not isinstance(self.auto_blob_threshold, int)
            or self.auto_blob_threshold < 0
        ):
            raise ConfigError(
                f"auto_blob_threshold must be a non-negative integer, got {self.auto_blob_threshold!r}"
            )
        if not isinstance(self.cleanup_age, timedelta) or self.cleanup_age < timedelta(0):
            raise ConfigError(f"cleanup_age must be a non-negative duration, got {self.cleanup_age!r}")
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {self.log_format!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any], home: Optional[Path] = None) -> "BatonConfig":
        """Build a config from parsed YAML, resolving paths against home."""
        home = home or get_baton_home()
        known = {"backend", "base_path", "auto_blob_threshold", "cleanup_age", "log_level", "log_format"}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        kwargs: dict[str, Any] = {}
        if "base_path" in data:
            base_path = Path(str(data["base_path"])).expanduser()
            kwargs["base_path"] = base_path if base_path.is_absolute() else home / base_path
        else:
            kwargs["base_path"] = home / "jobs"
        if "cleanup_age" in data:
            try:
                kwargs["cleanup_age"] = parse_duration(data["cleanup_age"])
            except ValueError as e:
                raise ConfigError(f"Invalid cleanup_age: {e}")
        for key in ("backend", "auto_blob_threshold", "log_level", "log_format"):
            if key in data:
                kwargs[key] = data[key]

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a YAML-friendly dictionary."""
        return {
            "backend": self.backend,
            "base_path": str(self.base_path),
            "auto_blob_threshold": self.auto_blob_threshold,
            "cleanup_age": f"{int(self.cleanup_age.total_seconds())}s",
            "log_level": self.log_level,
            "log_format": self.log_format,
        }


def load_config(config_path: Optional[Path] = None) -> BatonConfig:
    """
    Load baton configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $BATON_HOME/config.yaml

    Returns:
        BatonConfig (defaults when the file does not exist)

    Raises:
        ConfigError: If the file is unreadable or contains invalid values
    """
    home = get_baton_home()
    if config_path is None:
        config_path = home / "config.yaml"

    if not config_path.exists():
        return BatonConfig(base_path=home / "jobs")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {config_path} must be a mapping")

    return BatonConfig.from_dict(data, home=home)
