"""Source registry lookups (groups, stems, subjects and sync-marker assignments)."""

from directory_sync.registry.base import (
    SourceRegistry,
    RegistryError,
    RegistryConnectionError,
    RegistryQueryError,
)

__all__ = [
    'SourceRegistry',
    'RegistryError',
    'RegistryConnectionError',
    'RegistryQueryError',
]
