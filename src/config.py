"""Driver configuration management.

Configuration is loaded from a single YAML file:
- state_dir: Where per-stack state and lock files live
- concurrency / on_error / lock_timeout: Executor behaviour
- retry: Backoff settings for control-plane calls
- control_plane: Which backend receives create/update/delete calls

Resolution order for the config file:
1. --config PATH (CLI flag)
2. $STACK_DRIVER_CONFIG environment variable
3. driver.yaml next to the src/ directory
4. Built-in defaults (no file)

$STACK_DRIVER_STATE_DIR and $STACK_DRIVER_TOKEN override the file values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


# Error handling strategies understood by the executor
ON_ERROR_CHOICES = ('continue', 'stop', 'rollback')

# Supported control-plane backends
CONTROL_PLANE_TYPES = ('local', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetrySettings:
    """Exponential backoff settings for transient control-plane errors.

    Attributes:
        max_attempts: Total tries per call, including the first
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for a single delay in seconds
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetrySettings':
        """Create RetrySettings from dictionary."""
        if not data:
            return cls()
        settings = cls(
            max_attempts=int(data.get('max_attempts', 5)),
            base_delay=float(data.get('base_delay', 1.0)),
            max_delay=float(data.get('max_delay', 30.0)),
        )
        if settings.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if settings.base_delay < 0 or settings.max_delay < 0:
            raise ConfigError("retry delays must not be negative")
        return settings


@dataclass
class ControlPlaneSettings:
    """Target control-plane connection settings.

    Attributes:
        type: Backend type ('local' simulator or 'http' REST endpoint)
        endpoint: Base URL for the http backend
        token: Bearer token for the http backend
        verify_tls: Verify TLS certificates (http backend)
        timeout: Per-request timeout in seconds (http backend)
        path: Backing JSON file for the local backend (default: <state_dir>/control-plane.json)
    """
    type: str = 'local'
    endpoint: str = ''
    token: str = field(default='', repr=False)
    verify_tls: bool = True
    timeout: float = 30.0
    path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ControlPlaneSettings':
        """Create ControlPlaneSettings from dictionary."""
        if not data:
            return cls()
        cp_type = data.get('type', 'local')
        if cp_type not in CONTROL_PLANE_TYPES:
            raise ConfigError(
                f"Unknown control_plane.type '{cp_type}'. "
                f"Supported: {', '.join(CONTROL_PLANE_TYPES)}"
            )
        settings = cls(
            type=cp_type,
            endpoint=str(data.get('endpoint', '')).rstrip('/'),
            token=str(data.get('token', '')),
            verify_tls=data.get('verify_tls', True),
            timeout=float(data.get('timeout', 30.0)),
            path=Path(data['path']).expanduser() if data.get('path') else None,
        )
        if not isinstance(settings.verify_tls, bool):
            raise ConfigError(f"control_plane.verify_tls must be true or false, got {settings.verify_tls!r}")
        if settings.type == 'http' and not settings.endpoint:
            raise ConfigError("control_plane.endpoint is required for the http backend")
        return settings


@dataclass
class DriverConfig:
    """Configuration for stack operations.

    Attributes:
        config_file: YAML file the values were read from (None = defaults)
        state_dir: Directory holding per-stack state and lock files
        concurrency: Maximum number of control-plane operations in flight
        on_error: Failure policy (continue, stop, rollback)
        lock_timeout: Seconds to wait for a held state lock (0 = fail fast)
        region: Value of the AWS::Region pseudo parameter
        account_id: Value of the AWS::AccountId pseudo parameter
        retry: Backoff settings for transient errors
        control_plane: Target control-plane settings
    """
    config_file: Optional[Path] = None
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    concurrency: int = 4
    on_error: str = 'continue'
    lock_timeout: float = 0.0
    region: str = 'us-east-1'
    account_id: str = '123456789012'
    retry: RetrySettings = field(default_factory=RetrySettings)
    control_plane: ControlPlaneSettings = field(default_factory=ControlPlaneSettings)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

        if self.config_file is not None:
            if not self.config_file.exists():
                raise ConfigError(f"Config file not found: {self.config_file}")
            self._load_from_yaml()

        # Environment overrides (highest priority)
        if env_state := os.environ.get('STACK_DRIVER_STATE_DIR'):
            self.state_dir = Path(env_state)
        if env_token := os.environ.get('STACK_DRIVER_TOKEN'):
            self.control_plane.token = env_token

        self._validate()

    def _load_from_yaml(self):
        """Load configuration values from the YAML file."""
        data = _parse_yaml(self.config_file)

        if state_dir := data.get('state_dir'):
            path = Path(state_dir).expanduser()
            # Relative paths are relative to the config file
            if not path.is_absolute():
                path = self.config_file.parent / path
            self.state_dir = path

        self.concurrency = int(data.get('concurrency', self.concurrency))
        self.on_error = data.get('on_error', self.on_error)
        self.lock_timeout = float(data.get('lock_timeout', self.lock_timeout))
        self.region = str(data.get('region', self.region))
        self.account_id = str(data.get('account_id', self.account_id))
        self.retry = RetrySettings.from_dict(data.get('retry'))
        self.control_plane = ControlPlaneSettings.from_dict(data.get('control_plane'))

    def _validate(self):
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.on_error not in ON_ERROR_CHOICES:
            raise ConfigError(
                f"Unknown on_error '{self.on_error}'. "
                f"Supported: {', '.join(ON_ERROR_CHOICES)}"
            )
        if self.lock_timeout < 0:
            raise ConfigError("lock_timeout must not be negative")

    def stack_dir(self, stack_name: str) -> Path:
        """Directory holding state for one stack."""
        return self.state_dir / stack_name

    @property
    def local_control_plane_path(self) -> Path:
        """Backing file for the local control-plane simulator."""
        return self.control_plane.path or (self.state_dir / 'control-plane.json')


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the stack-driver directory."""
    return Path(__file__).parent.parent  # src/ -> stack-driver/


def discover_config_file() -> Optional[Path]:
    """Discover the driver config file.

    Resolution order:
    1. $STACK_DRIVER_CONFIG environment variable
    2. driver.yaml in the stack-driver directory
    """
    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        path = Path(env_path).expanduser()
        if path.exists():
            return path
        raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")

    default = get_base_dir() / 'driver.yaml'
    if default.exists():
        return default
    return None


def load_driver_config(config_path: Optional[str] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        config_path: Explicit config file (from --config). If None, uses discovery.

    Returns:
        DriverConfig instance (defaults when no file is found)

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    path = Path(config_path).expanduser() if config_path else discover_config_file()
    return DriverConfig(config_file=path)
