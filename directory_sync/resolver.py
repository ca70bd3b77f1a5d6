"""
Sync eligibility for registry groups and stems.

A node is in scope when it, or any stem above it up to the root, carries a
direct assignment of the connector's sync marker. Decisions are memoized per
node name for the lifetime of the resolver: once recorded they are not
re-evaluated until explicitly forgotten.
"""

import logging
from typing import Dict, List, Optional, Union

from directory_sync.models import Group, Stem
from directory_sync.registry.base import SourceRegistry

logger = logging.getLogger(__name__)


class SyncResolver:
    """Memoized resolver deciding whether groups and stems should be synced."""

    def __init__(self, registry: SourceRegistry, marker: str, consumer_name: str = 'default'):
        """
        Args:
            registry: Source registry used for assignment and parent lookups
            marker: Name of the sync marker assigned to in-scope nodes
            consumer_name: Connector name used in log messages
        """
        self.registry = registry
        self.marker = marker
        self.consumer_name = consumer_name
        self._decisions: Dict[str, bool] = {}

    @property
    def decisions(self) -> Dict[str, bool]:
        """Snapshot of the memoized decisions, keyed by node name."""
        return dict(self._decisions)

    def decision_for(self, name: str) -> Optional[bool]:
        """The memoized decision for ``name``, or None if it is not yet known."""
        return self._decisions.get(name)

    def forget(self, name: str) -> None:
        self._decisions.pop(name, None)

    def clear(self) -> None:
        logger.debug(f"Directory Sync Connector '{self.consumer_name}' - clearing "
                     f"{len(self._decisions)} sync decisions")
        self._decisions.clear()

    def should_sync_group(self, group: Group) -> bool:
        """True if ``group`` or one of its ancestor stems carries the sync marker."""
        cached = self._decisions.get(group.name)
        if cached is not None:
            return cached
        return self._resolve(group)

    def should_sync_stem(self, stem: Stem) -> bool:
        """True if ``stem`` or one of its ancestor stems carries the sync marker."""
        cached = self._decisions.get(stem.name)
        if cached is not None:
            return cached
        return self._resolve(stem)

    def _resolve(self, node: Union[Group, Stem]) -> bool:
        """
        Walk from ``node`` towards the root until the answer is known.

        Every node visited on the way gets the same decision recorded, which
        matches evaluating each of them independently.
        """
        visited: List[str] = []
        current = node

        while True:
            cached = self._decisions.get(current.name)
            if cached is not None:
                result = cached
                break

            visited.append(current.name)

            if self.registry.has_assignment(current, self.marker):
                result = True
                break

            if isinstance(current, Stem) and current.is_root:
                result = False
                break

            current = self.registry.get_parent_stem(current)

        for name in visited:
            self._decisions[name] = result

        logger.debug(f"Directory Sync Connector '{self.consumer_name}' - {node!r} "
                     f"{'is' if result else 'is not'} in scope ({len(visited)} nodes resolved)")
        return result

    def cache_synced_objects(self, fully_populate: bool = False) -> int:
        """
        Record every directly marked stem and group as in scope.

        Args:
            fully_populate: Also record every group below a marked stem

        Returns:
            Number of decisions recorded
        """
        recorded = 0

        for stem in self.registry.find_stems_with_assignment(self.marker):
            self._decisions[stem.name] = True
            recorded += 1

            if fully_populate:
                for group in self.registry.find_descendant_groups(stem):
                    self._decisions[group.name] = True
                    recorded += 1

        for group in self.registry.find_groups_with_assignment(self.marker):
            self._decisions[group.name] = True
            recorded += 1

        logger.info(f"Directory Sync Connector '{self.consumer_name}' - cached {recorded} "
                    f"synced objects (fully populated: {fully_populate})")
        return recorded
