"""
Sync configuration

Pattern: dataclass defaults, overridden by the `sync` section of config.yaml,
overridden again by SYNCLAYER_* environment variables.

Usage:
    config = load_config(Path("~/.synclayer").expanduser())
    config.validate()
"""

import os
import logging
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from .rows import PRIORITY_CLASS_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_BASE_PATH = Path.home() / ".synclayer"
CONFIG_FILENAME = "config.yaml"

DEFAULT_TABLES: Tuple[str, ...] = (
    "checklist_sets",
    "checklist_actions",
    "checklist_action_logs",
    "dictionary_entries",
)

# Lowest to highest: a later class wins exact updated_at ties.
DEFAULT_PRIORITY_ORDER: Tuple[str, ...] = ("desktop", "mobile")

ENV_PREFIX = "SYNCLAYER_"


@dataclass
class SyncConfig:
    """Configuration for the sync core."""

    backend_url: str = ""
    app_key: Optional[str] = None
    user_id: str = "demo"
    device_id: Optional[str] = None
    priority_class: str = "desktop"
    priority_order: Tuple[str, ...] = DEFAULT_PRIORITY_ORDER
    tables: Tuple[str, ...] = DEFAULT_TABLES
    timeout_seconds: float = 15.0
    polling_interval_seconds: float = 30.0
    max_polling_interval_seconds: float = 300.0
    backoff_factor: float = 2.0
    stream_reconnect_seconds: float = 1.0
    max_stream_reconnect_seconds: float = 60.0
    fallback_polling: bool = True
    bus_db_path: Optional[Path] = None
    bus_poll_interval_seconds: float = 0.5
    base_path: Path = field(default_factory=lambda: DEFAULT_BASE_PATH)

    def __post_init__(self):
        self.backend_url = (self.backend_url or "").rstrip("/")
        self.base_path = Path(self.base_path).expanduser()
        if self.bus_db_path is not None:
            self.bus_db_path = Path(self.bus_db_path).expanduser()
        self.priority_order = tuple(self.priority_order)
        self.tables = tuple(self.tables)

    @property
    def resolved_bus_db_path(self) -> Path:
        """SQLite file backing the durable bus adapter."""
        return self.bus_db_path or (self.base_path / "bus.sqlite")

    @property
    def cursor_db_path(self) -> Path:
        """SQLite file holding per-table pull cursors."""
        return self.base_path / "cursors.sqlite"

    def validate(self) -> None:
        """
        Check the configuration is usable.

        Raises:
            ValueError: If a required value is missing or out of range
        """
        if not self.backend_url:
            raise ValueError("backend_url is required (set SYNCLAYER_BACKEND_URL or sync.backend_url)")
        if not self.user_id:
            raise ValueError("user_id is required")
        for name in (
            "timeout_seconds",
            "polling_interval_seconds",
            "max_polling_interval_seconds",
            "stream_reconnect_seconds",
            "max_stream_reconnect_seconds",
            "bus_poll_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_polling_interval_seconds < self.polling_interval_seconds:
            raise ValueError("max_polling_interval_seconds must be >= polling_interval_seconds")
        if self.max_stream_reconnect_seconds < self.stream_reconnect_seconds:
            raise ValueError("max_stream_reconnect_seconds must be >= stream_reconnect_seconds")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not self.tables:
            raise ValueError("tables cannot be empty")
        for name in self.priority_order:
            if not PRIORITY_CLASS_PATTERN.match(str(name)):
                raise ValueError(f"Invalid priority class name in priority_order: {name!r}")
        if len(set(self.priority_order)) != len(self.priority_order):
            raise ValueError(f"priority_order has duplicates: {list(self.priority_order)}")
        if self.priority_class not in self.priority_order:
            raise ValueError(
                f"priority_class {self.priority_class!r} is not in priority_order "
                f"{list(self.priority_order)}; it would lose every tie"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML-friendly dictionary."""
        data = asdict(self)
        data["priority_order"] = list(self.priority_order)
        data["tables"] = list(self.tables)
        data["base_path"] = str(self.base_path)
        data["bus_db_path"] = str(self.bus_db_path) if self.bus_db_path else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        """Create SyncConfig from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning(f"Ignoring unknown sync config key: {key}")
                continue
            if value is None and key not in ("app_key", "device_id", "bus_db_path"):
                continue
            kwargs[key] = _coerce(key, value)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, base: Optional["SyncConfig"] = None) -> "SyncConfig":
        """
        Load configuration from environment variables.

        Args:
            base: Optional config whose values are used where no variable is set

        Returns:
            SyncConfig with SYNCLAYER_* overrides applied
        """
        data = base.to_dict() if base else {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is not None:
                data[f.name] = raw
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, base_path: Union[str, Path]) -> "SyncConfig":
        """
        Load the `sync` section of config.yaml under base_path.

        Missing files yield defaults with base_path set.
        """
        base_path = Path(base_path).expanduser()
        section = load_config_section(base_path)
        section.setdefault("base_path", str(base_path))
        return cls.from_dict(section)


def _coerce(key: str, value: Any) -> Any:
    """Convert env/yaml strings into the field's type."""
    if value is None:
        return None
    if key in ("priority_order", "tables"):
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return tuple(value)
    if key == "fallback_polling":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if key in ("base_path", "bus_db_path"):
        return Path(value)
    if key.endswith("_seconds") or key == "backoff_factor":
        return float(value)
    return value


def load_config_section(base_path: Union[str, Path], section: str = "sync") -> Dict[str, Any]:
    """Load one section of config.yaml.

    Args:
        base_path: Base directory containing config.yaml
        section: Top-level key to return

    Returns:
        Dictionary for the section, or an empty dict if the file or section
        is missing.

    Raises:
        ValueError: If config.yaml exists but is not valid YAML
    """
    config_path = Path(base_path) / CONFIG_FILENAME
    if not config_path.exists():
        return {}

    try:
        config = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

    if config and isinstance(config, dict):
        value = config.get(section) or {}
        return dict(value) if isinstance(value, dict) else {}
    return {}


def load_config(base_path: Optional[Union[str, Path]] = None) -> SyncConfig:
    """Load configuration: defaults < config.yaml < environment.

    Priority for base_path: argument > SYNCLAYER_BASE_PATH > ~/.synclayer.
    """
    if base_path is None:
        base_path = os.environ.get(ENV_PREFIX + "BASE_PATH") or DEFAULT_BASE_PATH
    return SyncConfig.from_env(SyncConfig.from_file(base_path))


__all__ = [
    "SyncConfig",
    "DEFAULT_TABLES",
    "DEFAULT_PRIORITY_ORDER",
    "DEFAULT_BASE_PATH",
    "CONFIG_FILENAME",
    "load_config",
    "load_config_section",
]
