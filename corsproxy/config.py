from typing import Dict, Any
import json
import os

class ProxyConfig:
    """Configuration manager for the forwarding gateway."""

    def __init__(self, config_path: str = None):
        """
        Initialize configuration with optional config file path.

        Args:
            config_path: Path to JSON configuration file
        """
        self.config_path = config_path
        self.config = self._load_default_config()

        if config_path:
            self._load_config_file()

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "0.0.0.0",
            "port": 5552,
            "read_header_timeout": 5,
            "shutdown_grace_period": 10,
            "upstream_timeout": None,
            "max_connections": 128,
            "buffer_size": 4096,
            "log_level": "INFO"
        }

    def _load_config_file(self) -> None:
        """Load configuration from JSON file."""
        if not os.path.exists(self.config_path):
            raise ValueError(f"Config file not found: {self.config_path}")
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Error loading config file: {e}")
        if not isinstance(file_config, dict):
            raise ValueError("Error loading config file: top level must be an object")
        self.config.update(file_config)

    def get(self, key: str) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key

        Returns:
            Configuration value
        """
        return self.config.get(key)

    def set(self, key: str, value: Any) -> None:
        """Override a configuration value, e.g. from the command line."""
        self.config[key] = value
