"""
Source registry interface.

The registry is the source of truth for groups, stems (organizational units),
subjects and sync-marker assignments. Implementations must provide the lookups
below; the sync workflow never writes to the registry.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Union

from directory_sync.models import Group, Member, Stem, Subject

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base exception for source registry errors."""
    pass


class RegistryConnectionError(RegistryError):
    """Raised when the registry cannot be reached."""
    pass


class RegistryQueryError(RegistryError):
    """Raised when a registry lookup fails."""
    pass


class SourceRegistry(ABC):
    """Abstract base class for source registry lookups."""

    @abstractmethod
    def find_group_by_name(self, name: str) -> Optional[Group]:
        """
        Find a group by its fully qualified name.

        Args:
            name: Colon-delimited group name

        Returns:
            The group, or None if it does not exist
        """
        pass

    @abstractmethod
    def find_stem_by_name(self, name: str) -> Optional[Stem]:
        """
        Find a stem by its fully qualified name. The empty name is the root stem.

        Returns:
            The stem, or None if it does not exist
        """
        pass

    @abstractmethod
    def find_subject(self, source_id: str, subject_id: str) -> Optional[Subject]:
        """
        Find a subject by source and identifier.

        Returns:
            The subject, or None if it does not exist
        """
        pass

    @abstractmethod
    def get_group_members(self, group: Group) -> List[Member]:
        """Return the direct members of ``group``."""
        pass

    @abstractmethod
    def has_assignment(self, node: Union[Group, Stem], marker: str) -> bool:
        """True if ``marker`` is assigned directly to ``node`` (not inherited)."""
        pass

    @abstractmethod
    def find_stems_with_assignment(self, marker: str) -> List[Stem]:
        """Enumerate every stem carrying a direct assignment of ``marker``."""
        pass

    @abstractmethod
    def find_groups_with_assignment(self, marker: str) -> List[Group]:
        """Enumerate every group carrying a direct assignment of ``marker``."""
        pass

    @abstractmethod
    def find_descendant_groups(self, stem: Stem) -> List[Group]:
        """Return every group below ``stem``, at any depth."""
        pass

    def get_parent_stem(self, node: Union[Group, Stem]) -> Stem:
        """
        Return the stem containing ``node``.

        Falls back to a bare ``Stem`` when the parent cannot be found so a
        policy walk can still continue towards the root.
        """
        parent_name = node.parent_name
        parent = self.find_stem_by_name(parent_name)
        if parent is None:
            logger.debug(f"Parent stem '{parent_name}' of {node!r} not found in registry")
            parent = Stem(parent_name)
        return parent
