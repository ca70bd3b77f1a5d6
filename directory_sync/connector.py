"""
Reconciliation of registry groups and memberships into the remote directory.

A ``DirectoryConnector`` is created per configured connector. It keeps
short-lived caches of registry objects, shares the long-lived remote caches
owned by a ``DirectoryCacheManager``, and decides through its ``SyncResolver``
which groups are in scope.

Remote reads log failures and return None. Remote writes raise
``DirectoryAPIError`` so the caller can mark the change event as failed.
"""

import logging
import secrets
from typing import Dict, List, Any, Optional

from directory_sync.address import AddressFormatter
from directory_sync.cache import DirectoryCacheManager, EntityCache
from directory_sync.directory_client import DirectoryClient, DirectoryAPIError
from directory_sync.models import DeletionPolicy, Group, Stem, Subject, subject_cache_key
from directory_sync.registry.base import SourceRegistry
from directory_sync.resolver import SyncResolver

logger = logging.getLogger(__name__)

MEMBER_ROLE = 'MEMBER'
ARCHIVE_SETTING = 'archiveOnly'

LOCAL_SUBJECT_CACHE_SIZE = 1000
LOCAL_GROUP_CACHE_SIZE = 100


def generate_password() -> str:
    """Random throwaway password for new accounts (they sign in through federation)."""
    return secrets.token_urlsafe(24)


def _is_true(value: Any) -> bool:
    return str(value).strip().lower() == 'true'


class DirectoryConnector:
    """
    Applies registry changes for one connector to the remote directory.
    """

    def __init__(self, name: str, config: Dict[str, Any], registry: SourceRegistry,
                 directory: DirectoryClient, cache_manager: DirectoryCacheManager, clock=None):
        """
        Initialize the connector. Call ``initialize()`` before use.

        Args:
            name: Connector name, used for the default sync marker and in logs
            config: Connector configuration section
            registry: Source registry lookups
            directory: Remote directory client
            cache_manager: Shared owner of the remote group and user caches
            clock: Optional time source for the local caches
        """
        self.name = name
        self.config = config
        self.registry = registry
        self.directory = directory
        self.cache_manager = cache_manager

        self.address_formatter = AddressFormatter(
            config['domain'],
            group_identifier_format=config.get('group_identifier_format', '{path}'),
            subject_identifier_format=config.get('subject_identifier_format', '{id}')
        )
        self.deletion_policy = DeletionPolicy.parse(config.get('handle_deleted_group', 'delete'))
        self.provision_users = config.get('provision_users', False)
        self.deprovision_users = config.get('deprovision_users', False)
        self.include_user_in_global_address_list = config.get('include_user_in_global_address_list', True)
        self.simple_subject_naming = config.get('simple_subject_naming', True)
        self.subject_given_name_field = config.get('subject_given_name_field', 'givenName')
        self.subject_surname_field = config.get('subject_surname_field', 'sn')
        self.default_group_settings = dict(config.get('default_group_settings') or {})
        self.sync_marker = config.get('sync_marker') or f"syncToDirectory{name}"

        self.resolver = SyncResolver(registry, self.sync_marker, consumer_name=name)

        self._clock = clock
        self._create_local_caches()

    def _log(self, message: str) -> str:
        return f"Directory Sync Connector '{self.name}' - {message}"

    def initialize(self):
        """Attach to the shared caches, load the remote caches and reset the local ones."""
        self.cache_manager.attach(self.name)

        self.cache_manager.users.set_cache_validity(self.config.get('remote_user_cache_validity_minutes', 30))
        self.populate_remote_users_cache()

        self.cache_manager.groups.set_cache_validity(self.config.get('remote_group_cache_validity_minutes', 30))
        self.populate_remote_groups_cache()

        self._create_local_caches()
        self.local_subjects.seed(LOCAL_SUBJECT_CACHE_SIZE)
        self.local_groups.seed(LOCAL_GROUP_CACHE_SIZE)

        if self.deprovision_users:
            logger.warning(self._log("user deprovisioning is enabled but not supported yet; "
                                     "removed members keep their remote accounts"))

        logger.info(self._log(f"initialized (marker: {self.sync_marker}, "
                              f"deleted groups: {self.deletion_policy.value})"))

    def _create_local_caches(self):
        validity = self.config.get('local_cache_validity_minutes', 5)
        self.local_subjects = EntityCache(
            lambda subject: subject_cache_key(subject.source_id, subject.id),
            name='local subjects', clock=self._clock
        ).set_cache_validity(validity)
        self.local_groups = EntityCache(
            lambda group: group.name, name='local groups', clock=self._clock
        ).set_cache_validity(validity)

    def close(self):
        self.cache_manager.detach(self.name)

    # Remote caches

    def populate_remote_users_cache(self):
        logger.debug(self._log("populating the remote user cache"))

        users = self.cache_manager.users
        if not users.is_expired():
            return
        try:
            users.seed(self.directory.retrieve_all_users())
        except DirectoryAPIError as e:
            logger.error(self._log(f"failed to populate the remote user cache: {e}"))

    def populate_remote_groups_cache(self):
        logger.debug(self._log("populating the remote group cache"))

        groups = self.cache_manager.groups
        if not groups.is_expired():
            return
        try:
            groups.seed(self.directory.retrieve_all_groups())
        except DirectoryAPIError as e:
            logger.error(self._log(f"failed to populate the remote group cache: {e}"))

    # Read-through lookups

    def fetch_remote_group(self, group_key: str) -> Optional[Dict[str, Any]]:
        group = self.cache_manager.groups.get(group_key)
        if group is None:
            try:
                group = self.directory.retrieve_group(group_key)
            except DirectoryAPIError as e:
                logger.warning(self._log(f"error fetching group ({group_key}) from the directory: {e}"))
                return None

            if group is not None:
                self.cache_manager.groups.put(group)

        return group

    def fetch_remote_user(self, user_key: str) -> Optional[Dict[str, Any]]:
        user = self.cache_manager.users.get(user_key)
        if user is None:
            try:
                user = self.directory.retrieve_user(user_key)
            except DirectoryAPIError as e:
                logger.warning(self._log(f"error fetching user ({user_key}) from the directory: {e}"))
                return None

            if user is not None:
                self.cache_manager.users.put(user)

        return user

    def fetch_local_group(self, group_name: str) -> Optional[Group]:
        group = self.local_groups.get(group_name)
        if group is None:
            group = self.registry.find_group_by_name(group_name)

            if group is not None:
                self.local_groups.put(group)

        return group

    def fetch_local_subject(self, source_id: str, subject_id: str) -> Optional[Subject]:
        subject = self.local_subjects.get(subject_cache_key(source_id, subject_id))
        if subject is None:
            subject = self.registry.find_subject(source_id, subject_id)

            if subject is not None:
                self.local_subjects.put(subject)

        return subject

    # Users and memberships

    def subject_address(self, subject: Subject) -> str:
        """Remote primary address for ``subject``: its email if it has one, else a qualified id."""
        email = subject.get_attribute_value('email')
        if email and str(email).strip():
            # Remote users are cached under the directory's lowercase primaryEmail
            return str(email).strip().lower()
        return self.address_formatter.qualify_subject_address(subject.id)

    def create_user(self, subject: Subject) -> Optional[Dict[str, Any]]:
        """
        Create a remote account for ``subject`` if user provisioning is enabled.

        Returns:
            The created user, or None when provisioning is disabled
        """
        if not self.provision_users:
            logger.debug(self._log(f"user provisioning disabled, not creating {subject!r}"))
            return None

        full_name = subject.name or subject.id
        if self.simple_subject_naming:
            parts = full_name.split()
            given_name = parts[0] if parts else ''
            family_name = parts[-1] if parts else ''
        else:
            given_name = subject.get_attribute_value(self.subject_given_name_field) or ''
            family_name = subject.get_attribute_value(self.subject_surname_field) or ''

        new_user = {
            'primaryEmail': self.subject_address(subject),
            'password': generate_password(),
            'includeInGlobalAddressList': self.include_user_in_global_address_list,
            'name': {
                'fullName': full_name,
                'givenName': given_name,
                'familyName': family_name
            }
        }

        created = self.directory.add_user(new_user)
        created = {key: value for key, value in created.items() if key != 'password'}
        self.cache_manager.users.put(created)

        logger.info(self._log(f"created user {created['primaryEmail']}"))
        return created

    def create_member(self, group: Dict[str, Any], user: Dict[str, Any], role: str = MEMBER_ROLE):
        member = {'email': user['primaryEmail'], 'role': role}
        self.directory.add_group_member(group['email'], member)
        logger.info(self._log(f"added {user['primaryEmail']} to {group['email']} as {role}"))

    def _ensure_user(self, subject: Subject) -> Optional[Dict[str, Any]]:
        user = self.fetch_remote_user(self.subject_address(subject))
        if user is None:
            user = self.create_user(subject)
        return user

    def add_membership(self, group_name: str, subject: Subject) -> bool:
        """
        Add ``subject`` to the remote copy of ``group_name``.

        Creates the remote group (with all of its current members) when it
        does not exist yet.

        Returns:
            True if the subject is now a remote member
        """
        group_key = self.address_formatter.qualify_group_address(group_name)
        remote_group = self.fetch_remote_group(group_key)

        if remote_group is None:
            local_group = self.fetch_local_group(group_name)
            if local_group is None:
                logger.warning(self._log(f"group {group_name} not found in the registry, "
                                         f"skipping membership of {subject!r}"))
                return False
            self.create_group_if_necessary(local_group)
            return True

        user = self._ensure_user(subject)
        if user is None:
            logger.info(self._log(f"no remote account for {subject!r}, membership in {group_key} skipped"))
            return False

        self.create_member(remote_group, user)
        return True

    def remove_membership(self, group_name: str, subject: Subject):
        group_key = self.address_formatter.qualify_group_address(group_name)
        user_key = self.subject_address(subject)

        self.directory.remove_group_member(group_key, user_key)
        logger.info(self._log(f"removed {user_key} from {group_key}"))

        if self.deprovision_users:
            # Needs a lookup of the user's remaining memberships before the account can go.
            logger.info(self._log(f"deprovisioning of {user_key} skipped: not supported yet"))

    # Groups

    def _apply_default_settings(self, group_key: str):
        settings = self.directory.retrieve_group_settings(group_key)
        settings.update(self.default_group_settings)
        self.directory.update_group_settings(group_key, settings)

    def create_group_if_necessary(self, local_group: Group) -> Dict[str, Any]:
        """
        Make sure the remote copy of ``local_group`` exists and is not archived.

        A newly created group gets the default settings and all of the local
        group's direct person members.

        Returns:
            The remote group
        """
        group_key = self.address_formatter.qualify_group_address(local_group.name)

        remote_group = self.fetch_remote_group(group_key)
        if remote_group is not None:
            settings = self.directory.retrieve_group_settings(group_key)
            if _is_true(settings.get(ARCHIVE_SETTING)):
                settings[ARCHIVE_SETTING] = 'false'
                self.directory.update_group_settings(group_key, settings)
                logger.info(self._log(f"unarchived group {group_key}"))
            return remote_group

        remote_group = self.directory.add_group({
            'name': local_group.display_extension,
            'email': group_key,
            'description': local_group.description
        })
        self.cache_manager.groups.put(remote_group)
        logger.info(self._log(f"created group {group_key}"))

        self._apply_default_settings(group_key)

        for member in self.registry.get_group_members(local_group):
            if not member.is_person:
                continue

            subject = self.fetch_local_subject(member.source_id, member.subject_id)
            if subject is None:
                logger.warning(self._log(f"member {member!r} of {local_group.name} not found in the registry"))
                continue

            user = self._ensure_user(subject)
            if user is not None:
                self.create_member(remote_group, user)

        return remote_group

    def update_group(self, group_key: str, group: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.directory.update_group(group_key, group)
        if updated.get('email'):
            self.cache_manager.groups.put(updated)
        return updated

    def get_membership(self, group_key: str) -> List[Dict[str, Any]]:
        return self.directory.retrieve_group_members(group_key)

    def delete_group(self, group: Group):
        self.delete_group_by_name(group.name)

    def delete_group_by_name(self, group_name: str):
        """Apply the deletion policy remotely and forget everything known about ``group_name``."""
        group_key = self.address_formatter.qualify_group_address(group_name)
        try:
            self.delete_group_by_key(group_key)
        finally:
            self.local_groups.remove(group_name)
            self.resolver.forget(group_name)

    def delete_group_by_key(self, group_key: str):
        if self.deletion_policy is DeletionPolicy.ARCHIVE:
            settings = self.directory.retrieve_group_settings(group_key)
            settings[ARCHIVE_SETTING] = 'true'
            self.directory.update_group_settings(group_key, settings)
            logger.info(self._log(f"archived group {group_key}"))

        elif self.deletion_policy is DeletionPolicy.DELETE:
            try:
                self.directory.remove_group(group_key)
            finally:
                self.cache_manager.groups.remove(group_key)
            logger.info(self._log(f"deleted group {group_key}"))

        else:
            logger.debug(self._log(f"ignoring deletion of group {group_key}"))

    # Sync eligibility

    def should_sync_group(self, group: Group) -> bool:
        return self.resolver.should_sync_group(group)

    def should_sync_stem(self, stem: Stem) -> bool:
        return self.resolver.should_sync_stem(stem)

    def cache_synced_objects(self, fully_populate: bool = False) -> int:
        return self.resolver.cache_synced_objects(fully_populate)

    def clear_sync_decisions(self):
        self.resolver.clear()

    @property
    def synced_objects(self) -> Dict[str, bool]:
        """Current memoized sync decisions, for diagnostics."""
        return self.resolver.decisions
