"""
Configuration management for tether stores.

The configuration is stored as a TOML file in the store directory.
It holds the tunable policies of the core: geo-match tolerance,
related-item expansion depth, and JPEG re-encode quality.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "tether.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "tether.db"

DEFAULT_TOLERANCE_KM = 0.05
DEFAULT_EXPAND_DEPTH = 2
DEFAULT_JPEG_QUALITY = 90


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Distance below which a photo's GPS fix is the same place as an existing one
    geo_tolerance_km: float = DEFAULT_TOLERANCE_KM
    # Hops followed when listing related items
    expand_depth: int = DEFAULT_EXPAND_DEPTH
    jpeg_quality: int = DEFAULT_JPEG_QUALITY

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """
    Resolve the store directory when none is given explicitly.

    Priority:
    1. TETHER_STORE_PATH environment variable
    2. ~/.tether
    """
    env_path = os.environ.get("TETHER_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".tether"


def _validate(config: StoreConfig) -> StoreConfig:
    if config.geo_tolerance_km <= 0:
        raise ValueError(f"geo.tolerance_km must be positive: {config.geo_tolerance_km}")
    if config.expand_depth < 1:
        raise ValueError(f"graph.expand_depth must be at least 1: {config.expand_depth}")
    if not 1 <= config.jpeg_quality <= 95:
        raise ValueError(f"ingest.jpeg_quality must be 1-95: {config.jpeg_quality}")
    return config


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    store: dict[str, Any] = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    return _validate(StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        geo_tolerance_km=float(data.get("geo", {}).get("tolerance_km", DEFAULT_TOLERANCE_KM)),
        expand_depth=int(data.get("graph", {}).get("expand_depth", DEFAULT_EXPAND_DEPTH)),
        jpeg_quality=int(data.get("ingest", {}).get("jpeg_quality", DEFAULT_JPEG_QUALITY)),
    ))


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "geo": {"tolerance_km": config.geo_tolerance_km},
        "graph": {"expand_depth": config.expand_depth},
        "ingest": {"jpeg_quality": config.jpeg_quality},
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = Path(store_path) if store_path is not None else get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = StoreConfig(path=store_path)
        save_config(config)
        return config
