"""
Configuration management for the transcript sync engine.

Settings are read from the ``[sync]`` table of a TOML file (with
``[sync.transport]`` and ``[sync.consistency]`` sub-tables) and can be
overridden through ``TAD_*`` environment variables.
"""

import os
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
import tomli
from loguru import logger


_CONFLICT_POLICIES = ("server", "client", "merge")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RealTimeSyncConfig:
    """Scheduler settings. Intervals are in seconds."""
    enabled: bool = True
    sync_interval: float = 300.0  # 5 minutes
    retry_interval: float = 30.0
    max_retries: int = 3
    sync_on_focus: bool = True
    sync_on_online: bool = True
    conflict_resolution: str = "server"  # "server", "client", "merge"


@dataclass
class TransportConfig:
    """Configuration for the HTTP transport adapter."""
    base_url: str = "http://localhost:3000/api"
    api_key: Optional[str] = None
    timeout: float = 30.0


@dataclass
class ConsistencyConfig:
    """Configuration for the consistency checker."""
    repair_strategy: str = "auto"  # "auto" or "manual"
    check_after_sync: bool = False
    # Only run the post-sync check when at least this many records changed
    large_sync_threshold: int = 50


@dataclass
class AppConfig:
    """Top-level configuration for the sync engine and its control API."""
    sync: RealTimeSyncConfig = field(default_factory=RealTimeSyncConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)

    log_level: str = "INFO"

    @classmethod
    def from_toml(cls, config_path: Optional[Path] = None) -> 'AppConfig':
        """
        Load configuration from TOML file.

        Args:
            config_path: Path to config file. If None, the default locations are searched.

        Returns:
            AppConfig instance (defaults when no file is found or it fails to load)
        """
        if config_path is None:
            possible_paths = [
                Path.home() / ".config" / "tad" / "config.toml",
                Path("config.toml"),
            ]

            for path in possible_paths:
                if path.exists():
                    config_path = path
                    break
            else:
                logger.warning("No config file found, using defaults")
                config = cls()
                config._apply_env_overrides()
                return config

        logger.info(f"Loading sync config from: {config_path}")

        try:
            with open(config_path, "rb") as f:
                toml_data = tomli.load(f)

            sync_table = dict(toml_data.get("sync", {}))
            transport_table = sync_table.pop("transport", {})
            consistency_table = sync_table.pop("consistency", {})
            log_level = sync_table.pop("log_level", "INFO")

            config = cls(
                sync=RealTimeSyncConfig(**sync_table),
                transport=TransportConfig(**transport_table),
                consistency=ConsistencyConfig(**consistency_table),
                log_level=log_level,
            )
        except Exception as e:
            logger.error(f"Error loading config from {config_path}: {e}")
            logger.warning("Using default configuration")
            config = cls()

        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        env_mappings = {
            "TAD_SYNC_INTERVAL": ("sync", "sync_interval", float),
            "TAD_RETRY_INTERVAL": ("sync", "retry_interval", float),
            "TAD_MAX_RETRIES": ("sync", "max_retries", int),
            "TAD_SYNC_ENABLED": ("sync", "enabled", _parse_bool),
            "TAD_CONFLICT_RESOLUTION": ("sync", "conflict_resolution", str),
            "TAD_API_BASE_URL": ("transport", "base_url", str),
            "TAD_API_KEY": ("transport", "api_key", str),
        }

        for env_var, (section, attr, converter) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    section_obj = getattr(self, section)
                    setattr(section_obj, attr, converter(value))
                    logger.debug(f"Override from env: {env_var} -> {section}.{attr}")
                except Exception as e:
                    logger.warning(f"Failed to apply env override {env_var}: {e}")

        log_level = os.environ.get("TAD_LOG_LEVEL")
        if log_level:
            self.log_level = log_level.upper()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (the API key is masked)."""
        data = asdict(self)
        if data["transport"]["api_key"]:
            data["transport"]["api_key"] = "***"
        return data

    def validate(self) -> List[str]:
        """
        Validate configuration settings.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.sync.sync_interval <= 0:
            errors.append("sync.sync_interval must be > 0")
        if self.sync.retry_interval <= 0:
            errors.append("sync.retry_interval must be > 0")
        if self.sync.max_retries < 0:
            errors.append("sync.max_retries must be >= 0")
        if self.sync.conflict_resolution not in _CONFLICT_POLICIES:
            errors.append(f"sync.conflict_resolution must be one of {', '.join(_CONFLICT_POLICIES)}")

        if not self.transport.base_url.startswith(("http://", "https://")):
            errors.append("transport.base_url must be an http(s) URL")
        if self.transport.timeout <= 0:
            errors.append("transport.timeout must be > 0")

        if self.consistency.repair_strategy not in ("auto", "manual"):
            errors.append("consistency.repair_strategy must be 'auto' or 'manual'")
        if self.consistency.large_sync_threshold < 0:
            errors.append("consistency.large_sync_threshold must be >= 0")

        return errors
