"""
Transport Factory and Registry

Maps account providers to MailTransport implementations and builds
configured transport instances for job handlers.
"""

import logging
from typing import Dict, List, Optional, Type

from mailarchiver.models.archive import AccountProvider, MailAccount

logger = logging.getLogger(__name__)

# Transport registry - maps account providers to implementation classes
_transport_registry: Dict[AccountProvider, Type] = {}


def register_transport(provider: AccountProvider):
    """
    Decorator to register a transport implementation.

    Usage:
        @register_transport(AccountProvider.IMAP)
        class ImapTransport:
            ...
    """
    def decorator(cls: Type):
        _transport_registry[provider] = cls
        logger.debug(f"Registered transport: {provider.value} -> {cls.__name__}")
        return cls
    return decorator


def get_transport_class(provider: AccountProvider) -> Optional[Type]:
    """Get the transport class for a given provider."""
    return _transport_registry.get(provider)


def create_transport(account: MailAccount, settings=None):
    """
    Create an unconnected transport for an account.

    Args:
        account: The account to connect to
        settings: Timeouts and TLS options, defaults to the global settings

    Raises:
        ValueError: If no transport is registered for the provider
    """
    cls = get_transport_class(account.provider)
    if not cls:
        raise ValueError(f"No transport registered for provider: {account.provider}")

    if settings is None:
        from mailarchiver.core.config import settings
    return cls.from_settings(account, settings)


def list_registered_transports() -> List[AccountProvider]:
    """List all registered providers."""
    return list(_transport_registry.keys())


def _load_transports():
    """Import transport implementations so they register themselves."""
    from mailarchiver.providers import graph, imap  # noqa: F401
    logger.debug(f"Loaded transports: {', '.join(p.value for p in _transport_registry)}")


# Auto-load transports on import
_load_transports()
