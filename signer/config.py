"""
Configuration Management

Hierarchical configuration for the signing backend: built-in defaults, an
optional YAML or JSON file, then environment variables. The merged result is
validated into a ``SignerSettings`` model.

Environment variables use the ``SIGNER_`` prefix with ``__`` between nesting
levels, e.g. ``SIGNER_STORAGE__BACKEND=http``. ``BUCKET`` and
``DERIVATION_PATH`` are also honoured for deployments that set them. A bare
``BUCKET`` name is turned into its S3 endpoint, regional when ``AWS_REGION``
is set.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from crypto.exceptions import DerivationError
from crypto.keys import DEFAULT_ACCOUNT_PATH, parse_derivation_path

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = 'SIGNER_CONFIG_FILE'
ENV_PREFIX = 'SIGNER_'
ENV_NESTING = '__'

CONFIG_SEARCH_PATHS = [
    Path.cwd() / 'signer.yml',
    Path.cwd() / 'signer.json',
    Path.home() / '.signer' / 'config.yml',
]

DEFAULT_CONFIG = {
    'network': 'mainnet',
    'key_derivation': {
        'account_path': DEFAULT_ACCOUNT_PATH,
        'entropy_bytes': 32,
    },
    'storage': {
        'backend': 'file',
        'path': '~/.signer/keys',
        'url': None,
        'timeout': 10.0,
        'lock_timeout': 10.0,
        'max_retries': 3,
    },
    'randomness': {
        'source': 'system',
        'device_path': '/dev/hwrng',
    },
    'signing': {
        'strict': False,
    },
    'policy': {
        'max_spend_per_tx': 500_000,
        'all_tx_halted': False,
    },
    'logging': {
        'level': 'INFO',
    },
}


class ConfigurationError(Exception):
    """Configuration could not be loaded or failed validation."""
    pass


class KeyDerivationSettings(BaseModel):
    account_path: str = DEFAULT_ACCOUNT_PATH
    entropy_bytes: int = Field(default=32)

    @field_validator('account_path')
    @classmethod
    def validate_account_path(cls, v):
        try:
            parse_derivation_path(v)
        except DerivationError as e:
            raise ValueError(str(e)) from e
        return v

    @field_validator('entropy_bytes')
    @classmethod
    def validate_entropy_bytes(cls, v):
        if v not in (16, 20, 24, 28, 32):
            raise ValueError('entropy_bytes must be one of 16, 20, 24, 28, 32')
        return v


class StorageSettings(BaseModel):
    backend: Literal['memory', 'file', 'http'] = 'file'
    path: str = '~/.signer/keys'
    url: Optional[str] = None
    timeout: float = Field(default=10.0, gt=0)
    lock_timeout: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError(f'Storage URL must start with http:// or https://: {v!r}')
        return v


class RandomnessSettings(BaseModel):
    source: Literal['system', 'device'] = 'system'
    device_path: str = '/dev/hwrng'


class SigningSettings(BaseModel):
    strict: bool = False


class PolicySettings(BaseModel):
    max_spend_per_tx: Optional[int] = Field(default=500_000, ge=0)
    all_tx_halted: bool = False


class LoggingSettings(BaseModel):
    level: str = 'INFO'

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        v = v.upper()
        if v not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level: {v}')
        return v


class SignerSettings(BaseModel):
    """Validated backend configuration."""

    network: Literal['mainnet', 'testnet'] = 'mainnet'
    key_derivation: KeyDerivationSettings = Field(default_factory=KeyDerivationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    randomness: RandomnessSettings = Field(default_factory=RandomnessSettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class ConfigurationManager:
    """Manages hierarchical configuration with environment variable support."""

    def __init__(self, config_file: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Explicit configuration file path
            environ: Environment mapping (defaults to ``os.environ``)
        """
        self.config_file = config_file
        self.environ = os.environ if environ is None else environ
        self._config_cache: Optional[Dict[str, Any]] = None
        self._config_sources: List[str] = []

    @property
    def sources(self) -> List[str]:
        return list(self._config_sources)

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources in hierarchical order.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigurationError: If an explicitly named file is missing or unreadable
        """
        if self._config_cache is not None:
            return self._config_cache

        configs = [copy.deepcopy(DEFAULT_CONFIG)]
        self._config_sources = ["defaults"]

        config_path = self._find_config_file()
        if config_path is not None:
            configs.append(self._load_config_file(config_path))
            self._config_sources.append(f"file:{config_path}")
            logger.debug(f"Loaded config from {config_path}")

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        merged = self._deep_merge(*configs)
        self._expand_paths(merged)
        self._config_cache = merged
        return merged

    def settings(self) -> SignerSettings:
        """
        Validated settings model.

        Raises:
            ConfigurationError: If the merged configuration is invalid
        """
        try:
            return SignerSettings.model_validate(self.load())
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'storage.backend')
            default: Default value if key not found
        """
        current = self.load()
        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def _find_config_file(self) -> Optional[Path]:
        explicit = self.config_file or self.environ.get(CONFIG_FILE_ENV)
        if explicit:
            path = Path(explicit).expanduser()
            if not path.is_file():
                raise ConfigurationError(f"Config file not found: {path}")
            return path
        for config_path in CONFIG_SEARCH_PATHS:
            if config_path.is_file():
                return config_path
        return None

    def _load_config_file(self, path: Path) -> Dict[str, Any]:
        """Load configuration from file."""
        try:
            with open(path, 'r') as f:
                if path.suffix in ('.yml', '.yaml'):
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unknown config file format: {path}")
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return data

    def _bucket_url(self, bucket: str) -> str:
        """S3 virtual-hosted endpoint for a bare bucket name; URLs pass through."""
        if '://' in bucket:
            return bucket
        region = self.environ.get('AWS_REGION')
        if region:
            return f"https://{bucket}.s3.{region}.amazonaws.com"
        return f"https://{bucket}.s3.amazonaws.com"

    def _load_environment_variables(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config: Dict[str, Any] = {}

        if self.environ.get('BUCKET'):
            env_config['storage'] = {'backend': 'http', 'url': self._bucket_url(self.environ['BUCKET'])}
        if self.environ.get('DERIVATION_PATH'):
            env_config['key_derivation'] = {'account_path': self.environ['DERIVATION_PATH']}

        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX) or key == CONFIG_FILE_ENV:
                continue
            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            if not all(parts):
                continue
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    raise ConfigurationError(f"Environment variable {key} conflicts with another setting")
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    @staticmethod
    def _parse_env_value(value: str) -> Union[str, int, float, bool, None]:
        """Parse environment variable value to appropriate type."""
        lowered = value.lower()
        if lowered in ('true', 'yes'):
            return True
        if lowered in ('false', 'no'):
            return False
        if lowered in ('none', 'null'):
            return None
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple dictionaries."""
        result: Dict[str, Any] = {}
        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                else:
                    result[key] = value
        return result

    def _expand_paths(self, config: Dict[str, Any]) -> None:
        """Expand ~ and environment variables in path values."""
        for key, value in config.items():
            if isinstance(value, dict):
                self._expand_paths(value)
            elif key in ('path', 'device_path') and isinstance(value, str):
                config[key] = os.path.expanduser(os.path.expandvars(value))
