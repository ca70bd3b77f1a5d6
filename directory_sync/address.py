"""
Qualification of registry identifiers into remote directory addresses.
"""

from directory_sync.models import NAME_SEPARATOR, extension

PATH_SEPARATOR = '-'


class AddressFormatter:
    """
    Builds remote addresses from group names and subject identifiers.

    Group formats may use ``{name}`` (the full registry name), ``{path}`` (the
    name with ``:`` replaced by ``-``) and ``{extension}`` (the last segment).
    Subject formats may use ``{id}``. The configured domain is appended.
    """

    def __init__(self, domain: str, group_identifier_format: str = '{path}',
                 subject_identifier_format: str = '{id}'):
        if not domain:
            raise ValueError("A domain is required to qualify addresses")
        self.domain = domain.strip().lower()
        self.group_identifier_format = group_identifier_format
        self.subject_identifier_format = subject_identifier_format

        # Fail early on unknown placeholders
        try:
            self.qualify_group_address('stem:group')
            self.qualify_subject_address('subject')
        except (KeyError, IndexError) as e:
            raise ValueError(f"Invalid address format placeholder: {e}")

    def qualify_group_address(self, group_name: str) -> str:
        local_part = self.group_identifier_format.format(
            name=group_name,
            path=group_name.replace(NAME_SEPARATOR, PATH_SEPARATOR),
            extension=extension(group_name)
        )
        return self._qualify(local_part)

    def qualify_subject_address(self, subject_id: str) -> str:
        return self._qualify(self.subject_identifier_format.format(id=subject_id))

    def _qualify(self, local_part: str) -> str:
        return f"{local_part.strip()}@{self.domain}".lower()

    def __repr__(self):
        return (f"AddressFormatter(domain={self.domain!r}, group={self.group_identifier_format!r}, "
                f"subject={self.subject_identifier_format!r})")
