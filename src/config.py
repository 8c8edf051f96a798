"""Driver configuration management.

Configuration is loaded from a driver.yaml file:
- state_dir: Where execution records and locks are kept
- parallelism: Max concurrent provider calls per run
- retry: Backoff policy for retryable provider errors
- lock: Advisory lock settings
- provider: Which provider backs the provider calls, and its settings
- rotation: How consume-phase credentials are obtained
- credentials_file: Named credential material (decrypted)

Resolution order for driver.yaml:
1. $SECRETS_IAC_CONFIG environment variable
2. ./driver.yaml in the working directory
3. ~/.config/secrets-iac-driver/driver.yaml
4. Built-in defaults
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'SECRETS_IAC_CONFIG'
CONFIG_FILENAME = 'driver.yaml'

SUPPORTED_PROVIDERS = ('local', 'http')
ROTATION_MODES = ('provider', 'file')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for retryable provider errors."""
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0


@dataclass
class ProviderSettings:
    """Provider selection and connection settings.

    Attributes:
        name: Provider implementation (local, http)
        base_url: Backend API URL (http provider)
        timeout: Per-request timeout in seconds (http provider)
        verify_tls: Verify backend TLS certificate (http provider)
        backend_file: JSON file holding simulated backend state (local provider)
    """
    name: str = 'local'
    base_url: str = ''
    timeout: float = 30.0
    verify_tls: bool = True
    backend_file: Optional[Path] = None


@dataclass
class RotationSettings:
    """Credential rotation settings.

    Attributes:
        mode: 'provider' issues fresh material via the provider,
              'file' reads it from credentials_file
        auth_method: Setup node whose access id the fresh material belongs to
        consume_credential: Credential name used in 'file' mode
    """
    mode: str = 'provider'
    auth_method: Optional[str] = None
    consume_credential: str = 'consume'


@dataclass
class DriverConfig:
    """Configuration for a driver run."""
    config_file: Optional[Path] = None
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    parallelism: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    lock_ttl: float = 900.0
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    rotation: RotationSettings = field(default_factory=RotationSettings)
    credentials_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

        if self.config_file is not None and self.config_file.exists():
            self._load_from_yaml()

        self._validate()

    def _load_from_yaml(self):
        """Load settings from driver.yaml, resolving paths relative to it."""
        data = _parse_yaml(self.config_file)
        base = self.config_file.parent

        if state_dir := data.get('state_dir'):
            self.state_dir = _resolve_path(base, state_dir)

        if 'parallelism' in data:
            self.parallelism = int(data['parallelism'])

        retry = data.get('retry') or {}
        self.retry = RetryPolicy(
            attempts=int(retry.get('attempts', self.retry.attempts)),
            base_delay=float(retry.get('base_delay', self.retry.base_delay)),
            max_delay=float(retry.get('max_delay', self.retry.max_delay)),
        )

        if ttl := (data.get('lock') or {}).get('ttl'):
            self.lock_ttl = float(ttl)

        provider = data.get('provider') or {}
        backend_file = provider.get('backend_file')
        verify_tls = provider.get('verify_tls', True)
        if not isinstance(verify_tls, bool):
            raise ConfigError(f"provider.verify_tls must be true or false, got {verify_tls!r}")
        self.provider = ProviderSettings(
            name=provider.get('name', self.provider.name),
            base_url=provider.get('base_url', ''),
            timeout=float(provider.get('timeout', self.provider.timeout)),
            verify_tls=verify_tls,
            backend_file=_resolve_path(base, backend_file) if backend_file else None,
        )

        rotation = data.get('rotation') or {}
        self.rotation = RotationSettings(
            mode=rotation.get('mode', self.rotation.mode),
            auth_method=rotation.get('auth_method'),
            consume_credential=rotation.get('consume_credential', 'consume'),
        )

        if credentials_file := data.get('credentials_file'):
            self.credentials_file = _resolve_path(base, credentials_file)

        logger.debug(f"Loaded driver config from {self.config_file}")

    def _validate(self):
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.retry.attempts < 1:
            raise ConfigError(f"retry.attempts must be >= 1, got {self.retry.attempts}")
        if self.provider.name not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unknown provider '{self.provider.name}'. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if self.provider.name == 'http' and not self.provider.base_url:
            raise ConfigError("provider.base_url is required for the http provider")
        if self.rotation.mode not in ROTATION_MODES:
            raise ConfigError(
                f"Unknown rotation mode '{self.rotation.mode}'. "
                f"Supported: {', '.join(ROTATION_MODES)}"
            )

    @property
    def backend_file(self) -> Path:
        """Local provider backend file (defaults under state_dir)."""
        return self.provider.backend_file or self.state_dir / 'local-backend.json'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _resolve_path(base: Path, value: str) -> Path:
    path = Path(os.path.expanduser(str(value)))
    if not path.is_absolute():
        path = base / path
    return path


def get_base_dir() -> Path:
    """Get the secrets-iac-driver directory."""
    return Path(__file__).parent.parent  # src/ -> secrets-iac-driver/


def find_config_file() -> Optional[Path]:
    """Discover driver.yaml.

    Resolution order:
    1. $SECRETS_IAC_CONFIG environment variable
    2. ./driver.yaml
    3. ~/.config/secrets-iac-driver/driver.yaml
    """
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV_VAR}={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local

    user = Path.home() / '.config' / 'secrets-iac-driver' / CONFIG_FILENAME
    if user.exists():
        return user

    return None


def load_config(path: Optional[str] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        path: Explicit config file. If None, uses discovery.

    Raises:
        ConfigError: If an explicit path does not exist or config is invalid
    """
    if path:
        config_file = Path(path)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
    else:
        config_file = find_config_file()

    if config_file is None:
        logger.debug("No driver.yaml found, using defaults")
    return DriverConfig(config_file=config_file)


def load_credentials(config: DriverConfig) -> dict[str, Any]:
    """Load all named credentials from credentials_file."""
    if config.credentials_file is None:
        raise ConfigError("credentials_file is not configured in driver.yaml")
    if not config.credentials_file.exists():
        raise ConfigError(
            f"Credentials file not found: {config.credentials_file}. "
            "Create it with access_id/access_key entries per credential name."
        )
    return _parse_yaml(config.credentials_file)


def load_credential(config: DriverConfig, name: str, purpose: Optional[str] = None):
    """Load one named credential as CredentialMaterial.

    Raises:
        ConfigError: If the credential is missing or malformed
    """
    from manifest_opr.rotation import CredentialMaterial

    credentials = load_credentials(config)
    entry = credentials.get(name)
    if not isinstance(entry, dict):
        available = ', '.join(sorted(credentials)) or 'none'
        raise ConfigError(f"Credential '{name}' not found. Available: {available}")
    for key in ('access_id', 'access_key'):
        if not entry.get(key):
            raise ConfigError(f"Credential '{name}' missing required field: {key}")
    return CredentialMaterial.from_dict(entry, purpose=purpose or name)


def save_credential(config: DriverConfig, name: str, material) -> Path:
    """Store CredentialMaterial under name in credentials_file (mode 0600).

    Returns:
        Path of the credentials file
    """
    if config.credentials_file is None:
        raise ConfigError("credentials_file is not configured in driver.yaml")

    path = config.credentials_file
    credentials = _parse_yaml(path) if path.exists() else {}
    entry = {
        'access_id': material.access_id,
        'access_key': material.access_key,
        'issued_at': material.issued_at,
    }
    if material.expires_at is not None:
        entry['expires_at'] = material.expires_at
    credentials[name] = entry

    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        yaml.safe_dump(credentials, f, default_flow_style=False, sort_keys=True)
    logger.info(f"Saved credential '{name}' ({material.fingerprint}) to {path}")
    return path
