"""Configuration loader for the beacon validator."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

from beacon_validator.bluetooth.protocol import CONFIG_SERVICE_UUID, URI_SERVICE_UUID

DEFAULT_CONFIG_PATH = Path("configs/validator.yml")


class ValidatorSettings(BaseModel):
    """Tunables of the test engine."""

    scan_timeout: float = Field(default=5.0, gt=0)
    reconnect_delay: float = Field(default=1.0, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    config_service_uuid: str = CONFIG_SERVICE_UUID
    uri_service_uuid: str = URI_SERVICE_UUID
    adapter: Optional[str] = None
    log_level: Optional[str] = None


class ConfigLoader:
    """Load and manage the validator.yml configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        env_path = os.environ.get("BEACON_VALIDATOR_CONFIG")
        self.config_path = config_path or (Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
        self._config_cache: Optional[Dict[str, Any]] = None

    def load_config(self) -> Dict[str, Any]:
        """Load the configuration file. A missing file yields an empty configuration.

        Raises:
            yaml.YAMLError: If the file exists but is not valid YAML
        """
        if self._config_cache is None:
            if self.config_path.exists():
                with open(self.config_path, "r") as f:
                    self._config_cache = yaml.safe_load(f) or {}
            else:
                self._config_cache = {}
        return self._config_cache

    def get_settings(self, **overrides: Any) -> ValidatorSettings:
        """Build engine settings from the ``validator`` section.

        Args:
            **overrides: Values taking precedence over the file (None values are ignored)

        Raises:
            pydantic.ValidationError: If a value is out of range or of the wrong type
        """
        config = self.load_config()
        values = dict(config.get("validator", {}) or {})
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ValidatorSettings(**values)

    def get_suite_path(self) -> Optional[Path]:
        """Get the configured test suite file, if any."""
        config = self.load_config()
        suite = config.get("suite")
        return Path(suite) if suite else None

    def reload_config(self):
        """Force reload of the configuration."""
        self._config_cache = None


# Global instance
config_loader = ConfigLoader()
