"""
Configuration loader for the media relay service.

Loads YAML configuration with environment variable substitution.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError


# Load .env file if present
load_dotenv()


# Required keys per sink kind, besides 'name' and 'kind'
_REQUIRED_SINK_FIELDS = {
    'process': ('bucket', 'access_grant'),
    'sdk': ('bucket', 'access_key', 'secret_key'),
    'http': ('bucket', 'base_url', 'password'),
}

PARTITION_NAMES = ('general', 'restricted')

# Sink fields masked in logs
_SECRET_SINK_FIELDS = ('access_grant', 'secret_key', 'password')


class Config:
    """
    Configuration with environment variable substitution.

    Built once at startup and handed to every component that needs it.

    Usage:
        config = Config.load('config.yaml')
        token = config.get('auth.service_token')
        port = config.get('server.port', default=3000)
    """

    _env_pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')

    def __init__(self, config_data: dict):
        self._data = config_data

    @classmethod
    def load(cls, config_path: str = 'config.yaml') -> 'Config':
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Config instance

        Raises:
            ConfigurationError: If file not found, invalid YAML or a required
                value is missing
        """
        path = Path(config_path)

        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            raw_content = f.read()

        return cls.from_string(raw_content)

    @classmethod
    def from_string(cls, raw_content: str) -> 'Config':
        """Parse and validate YAML text after environment substitution."""
        content = cls._substitute_env_vars(raw_content)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a YAML dictionary")

        instance = cls(data)
        instance._validate()
        return instance

    @classmethod
    def _substitute_env_vars(cls, content: str) -> str:
        """
        Substitute ${VAR} and ${VAR:-default} patterns with environment values.

        Unset variables without a default are left in place so validation can
        report them.

        Args:
            content: Raw file content

        Returns:
            Content with environment variables substituted
        """
        def replace(match):
            var_name, fallback = match.group(1), match.group(2)
            value = os.environ.get(var_name)
            if value is None:
                return fallback if fallback is not None else match.group(0)
            return value

        return cls._env_pattern.sub(replace, content)

    @staticmethod
    def _is_missing(value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return value.strip() == '' or value.startswith('${')
        return False

    def _validate(self) -> None:
        """
        Validate required configuration fields.

        Raises:
            ConfigurationError: If required fields are missing
        """
        if self._is_missing(self.get('auth.service_token')):
            raise ConfigurationError("Required configuration field missing: auth.service_token")

        partitions = self.get('partitions')
        if not isinstance(partitions, dict):
            raise ConfigurationError("Required configuration section missing: partitions")

        for partition in PARTITION_NAMES:
            sinks = self.get_sink_configs(partition)
            if not sinks:
                raise ConfigurationError(f"Partition '{partition}' must declare at least one sink")

            for index, sink in enumerate(sinks):
                where = f"partitions.{partition}.sinks[{index}]"
                kind = sink.get('kind')
                if kind not in _REQUIRED_SINK_FIELDS:
                    raise ConfigurationError(f"{where}: unknown sink kind {kind!r}")
                for field in _REQUIRED_SINK_FIELDS[kind]:
                    if self._is_missing(sink.get(field)):
                        raise ConfigurationError(f"Required configuration field missing: {where}.{field}")

        chunk_size = self.get('relay.chunk_size', 64 * 1024)
        if not isinstance(chunk_size, int) or chunk_size < 1:
            raise ConfigurationError("relay.chunk_size must be a positive integer")

        queue_size = self.get('relay.queue_size', 8)
        if not isinstance(queue_size, int) or queue_size < 1:
            raise ConfigurationError("relay.queue_size must be a positive integer")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-separated key.

        Args:
            key: Dot-separated key (e.g., 'server.port')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self._data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_sink_configs(self, partition: str) -> list:
        """Get the ordered sink list of a partition; the first entry is its primary."""
        sinks = self.get(f'partitions.{partition}.sinks', [])
        return [dict(s) for s in sinks] if isinstance(sinks, list) else []

    def get_server_config(self) -> dict:
        """Get server configuration section."""
        return self._data.get('server', {})

    def get_origin_config(self) -> dict:
        """Get content origin configuration section."""
        return self._data.get('origin', {})

    def get_relay_config(self) -> dict:
        """Get relay (fan-out and raw upload) configuration section."""
        return self._data.get('relay', {})

    def get_move_config(self) -> dict:
        """Get move operator configuration section."""
        return self._data.get('move', {})

    def get_token_config(self) -> dict:
        """Get token cache configuration section."""
        return self._data.get('tokens', {})

    def get_logging_config(self) -> dict:
        """Get logging configuration section."""
        return self._data.get('logging', {})

    @property
    def service_token(self) -> str:
        return self.get('auth.service_token')

    def get_secrets(self) -> list:
        """Credential values that must never appear in logs."""
        secrets = [self.service_token]
        for partition in PARTITION_NAMES:
            for sink in self.get_sink_configs(partition):
                secrets.extend(sink.get(f) for f in _SECRET_SINK_FIELDS if sink.get(f))
        return secrets

    def get_temp_dir(self) -> Path:
        """Get directory for finalize temp files as Path object."""
        return Path(self.get('relay.temp_dir', '/tmp'))


def load_config(config_path: str = 'config.yaml') -> Config:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Config instance
    """
    return Config.load(config_path)
