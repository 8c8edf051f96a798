"""Provider implementations for the provider-call abstraction."""

from config import ConfigError, DriverConfig
from providers.base import Provider, ProviderError, is_retryable


def get_provider(config: DriverConfig) -> Provider:
    """Build the provider named in config.

    Raises:
        ConfigError: If the provider is unknown
    """
    settings = config.provider
    if settings.name == 'local':
        from providers.local import LocalProvider
        return LocalProvider(backend_file=config.backend_file)
    if settings.name == 'http':
        from providers.http import HttpProvider
        return HttpProvider(
            base_url=settings.base_url,
            timeout=settings.timeout,
            verify_tls=settings.verify_tls,
        )
    raise ConfigError(f"Unknown provider '{settings.name}'")


__all__ = ['Provider', 'ProviderError', 'get_provider', 'is_retryable']
