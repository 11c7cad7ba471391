"""Configuration management for hookwire.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for the platform client, the HTTP host and logging.
Environment variables take precedence over settings.yaml.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("hookwire.dispatch")

DEFAULT_API_URL = "https://api.botpress.cloud"
DEFAULT_CLIENT_TIMEOUT = 60
DEFAULT_PORT = 8072


class Config:
    """Central configuration manager for hookwire.

    Args:
        config_dir: Directory holding settings.yaml and .env. Defaults to
            ``$HOOKWIRE_CONFIG_DIR`` or ``<cwd>/config``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(os.environ.get("HOOKWIRE_CONFIG_DIR", "config"))
        self.config_dir = Path(config_dir)

        env_file = self.config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def validate(self):
        """Validate critical settings at startup.

        Logs errors but does not raise -- a misconfigured client fails
        per request with a structured error instead.
        """
        parsed = urlparse(self.api_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            logger.error("config_invalid_value", key="api_url", value=self.api_url)
        elif parsed.scheme != "https":
            logger.warning("insecure_api_url", url=self.api_url)

        timeout = self.client_timeout
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            logger.error("config_invalid_value", key="client.timeout", value=timeout, valid="> 0")

        if not self.api_token:
            logger.info("api_token_not_set", msg="Relying on platform-injected credentials")

    @property
    def api_url(self) -> str:
        """Platform API base URL. Env var HOOKWIRE_API_URL takes precedence."""
        return os.environ.get("HOOKWIRE_API_URL") or self.settings.get("api_url", DEFAULT_API_URL)

    @property
    def api_token(self) -> str:
        """Bearer token for the platform API (optional)."""
        return os.environ.get("HOOKWIRE_API_TOKEN", "")

    @property
    def client_timeout(self) -> float:
        """Total timeout in seconds for one platform API call (default 60)."""
        client_config = self.settings.get("client", {})
        return client_config.get("timeout", DEFAULT_CLIENT_TIMEOUT)

    @property
    def server_host(self) -> str:
        server_config = self.settings.get("server", {})
        return server_config.get("host", "0.0.0.0")

    @property
    def server_port(self) -> int:
        """HTTP port. Env var PORT takes precedence (default 8072)."""
        env_port = os.environ.get("PORT")
        if env_port and env_port.isdigit():
            return int(env_port)
        server_config = self.settings.get("server", {})
        return server_config.get("port", DEFAULT_PORT)

    @property
    def log_dir(self) -> Optional[Path]:
        """Directory for rotating log files, or None for console only."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return None

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO)."""
        log_config = self.settings.get("logging", {})
        return log_config.get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"client": "DEBUG"}."""
        log_config = self.settings.get("logging", {})
        return log_config.get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        log_config = self.settings.get("logging", {})
        return log_config.get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        log_config = self.settings.get("logging", {})
        return log_config.get("backup_count", 5)

    @property
    def logging_json(self) -> bool:
        """Render log lines as JSON instead of the console format."""
        log_config = self.settings.get("logging", {})
        return bool(log_config.get("json", False))


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
