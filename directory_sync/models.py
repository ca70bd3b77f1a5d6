"""
Source registry entities used by the sync workflow.

Groups and stems live in a colon-delimited namespace (``science:physics-majors``
is the group ``physics-majors`` inside the stem ``science``). The root stem has
the empty name.
"""

from enum import Enum
from typing import Dict, Any, Optional

NAME_SEPARATOR = ':'
ROOT_STEM_NAME = ''

SUBJECT_TYPE_PERSON = 'person'
SUBJECT_TYPE_GROUP = 'group'


def parent_stem_name(name: str) -> str:
    """Return the name of the stem containing ``name`` (root for top-level names)."""
    if NAME_SEPARATOR not in name:
        return ROOT_STEM_NAME
    return name.rsplit(NAME_SEPARATOR, 1)[0]


def extension(name: str) -> str:
    """Return the last segment of a namespace name."""
    return name.rsplit(NAME_SEPARATOR, 1)[-1]


class DeletionPolicy(Enum):
    """What to do remotely when a group is deleted in the registry."""

    ARCHIVE = 'archive'
    DELETE = 'delete'
    IGNORE = 'ignore'

    @classmethod
    def parse(cls, value: str) -> 'DeletionPolicy':
        """
        Parse a configured policy value (case-insensitive).

        Raises:
            ValueError: If the value is not a known policy
        """
        normalized = str(value).strip().lower()
        for policy in cls:
            if policy.value == normalized:
                return policy
        allowed = ', '.join(p.value for p in cls)
        raise ValueError(f"Unknown deletion policy '{value}' (expected one of: {allowed})")


class Stem:
    """An organizational unit in the registry namespace."""

    def __init__(self, name: str, display_name: Optional[str] = None, uuid: Optional[str] = None):
        self.name = name
        self.display_name = display_name or extension(name)
        self.uuid = uuid

    @property
    def is_root(self) -> bool:
        return self.name == ROOT_STEM_NAME

    @property
    def parent_name(self) -> Optional[str]:
        if self.is_root:
            return None
        return parent_stem_name(self.name)

    def __eq__(self, other):
        return isinstance(other, Stem) and other.name == self.name

    def __hash__(self):
        return hash(('stem', self.name))

    def __repr__(self):
        return f"Stem({self.name!r})"


class Group:
    """A group in the registry namespace."""

    def __init__(self, name: str, display_extension: Optional[str] = None,
                 description: Optional[str] = None, uuid: Optional[str] = None):
        self.name = name
        self.display_extension = display_extension or extension(name)
        self.description = description or ''
        self.uuid = uuid

    @property
    def parent_name(self) -> str:
        return parent_stem_name(self.name)

    def __eq__(self, other):
        return isinstance(other, Group) and other.name == self.name

    def __hash__(self):
        return hash(('group', self.name))

    def __repr__(self):
        return f"Group({self.name!r})"


class Member:
    """A direct membership entry of a registry group."""

    def __init__(self, subject_id: str, source_id: str, subject_type: str = SUBJECT_TYPE_PERSON):
        self.subject_id = subject_id
        self.source_id = source_id
        self.subject_type = subject_type

    @property
    def is_person(self) -> bool:
        return self.subject_type == SUBJECT_TYPE_PERSON

    def __repr__(self):
        return f"Member({self.source_id!r}, {self.subject_id!r}, {self.subject_type!r})"


class Subject:
    """A person (or other subject) known to the registry."""

    def __init__(self, subject_id: str, source_id: str, name: str = '',
                 attributes: Optional[Dict[str, Any]] = None,
                 subject_type: str = SUBJECT_TYPE_PERSON):
        self.id = subject_id
        self.source_id = source_id
        self.name = name
        self.attributes = attributes or {}
        self.subject_type = subject_type

    def get_attribute_value(self, attribute: str) -> Optional[str]:
        """Return a single-valued attribute, or the first value of a multi-valued one."""
        value = self.attributes.get(attribute)
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value or None

    def __repr__(self):
        return f"Subject({self.source_id!r}, {self.id!r})"


def subject_cache_key(source_id: str, subject_id: str) -> str:
    """Key used for the local subject cache."""
    return f"{source_id}__{subject_id}"
