"""
LDAP-backed source registry.

The registry namespace maps onto an LDAP subtree rooted at ``base_dn``:
stems are organizational units and groups are group entries, so the group
``science:physics-majors`` lives at ``cn=physics-majors,ou=science,<base_dn>``.
A sync marker is assigned to a node by adding the marker value to the node's
``marker_attribute`` (``businessCategory`` by default).
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional, Union
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn, escape_rdn

from directory_sync.models import (
    NAME_SEPARATOR,
    ROOT_STEM_NAME,
    SUBJECT_TYPE_GROUP,
    SUBJECT_TYPE_PERSON,
    Group,
    Member,
    Stem,
    Subject,
    extension,
    parent_stem_name,
)
from directory_sync.registry.base import SourceRegistry, RegistryConnectionError, RegistryQueryError

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
NO_SUCH_OBJECT = 32
GROUP_SOURCE_ID = 'g:gsa'

SUBJECT_ATTRIBUTES = ['cn', 'displayName', 'givenName', 'sn', 'mail']


class LDAPRegistry(SourceRegistry):
    """
    Source registry reading groups, stems and subjects from an LDAP directory.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the registry with configuration.

        Args:
            config: ``registry`` configuration section
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']
        self.user_base_dn = config.get('user_base_dn') or self.base_dn
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_object_class = config.get('group_object_class', 'groupOfNames')
        self.stem_object_class = config.get('stem_object_class', 'organizationalUnit')
        self.marker_attribute = config.get('marker_attribute', 'businessCategory')
        self.subject_id_attribute = config.get('subject_id_attribute', 'uid')
        self.subject_source_id = config.get('subject_source_id', 'ldap')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self._base_rdn_count = len(parse_dn(self.base_dn))

        self.server = None
        self.connection = None
        self._connected = False

    # Connection handling

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to the LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts
            retry_wait: Seconds to wait between attempts

        Returns:
            True if connection successful

        Raises:
            RegistryConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except RegistryConnectionError:
            raise
        except Exception as e:
            raise RegistryConnectionError(f"Failed to create LDAP server: {e}")

        attempts = max(1, max_retries)
        for attempt in range(1, attempts + 1):
            try:
                self._open_connection()
            except (LDAPException, RegistryConnectionError) as e:
                if attempt == attempts:
                    raise RegistryConnectionError(
                        f"Failed to connect to registry {self.server_url} after {attempts} attempts: {e}"
                    )
                logger.warning(f"Registry connection attempt {attempt}/{attempts} to {self.server_url} "
                               f"failed ({type(e).__name__}: {e}), retrying in {retry_wait}s")
                time.sleep(retry_wait)
                continue

            if attempt > 1:
                logger.info(f"Registry connection succeeded on attempt {attempt}")
            break

        logger.info(f"Successfully connected and bound to registry {self.server_url}")
        return True

    def _open_connection(self):
        """Open, optionally StartTLS, and bind a single connection."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )

        try:
            if not self.connection.open():
                raise RegistryConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise RegistryConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except (LDAPException, RegistryConnectionError):
            self._discard_connection()
            raise

        self._connected = True

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding LDAP connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled for registry")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise RegistryConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("Registry connection closed")
            except Exception as e:
                logger.warning(f"Error closing registry connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    # Namespace <-> DN mapping

    def stem_dn(self, name: str) -> str:
        """Distinguished name of the stem called ``name``."""
        if name == ROOT_STEM_NAME:
            return self.base_dn
        rdns = [f"ou={escape_rdn(segment)}" for segment in reversed(name.split(NAME_SEPARATOR))]
        return ','.join(rdns + [self.base_dn])

    def group_dn(self, name: str) -> str:
        """Distinguished name of the group called ``name``."""
        return f"cn={escape_rdn(extension(name))},{self.stem_dn(parent_stem_name(name))}"

    def name_from_dn(self, dn: str) -> str:
        """Namespace name for an entry below ``base_dn``."""
        components = parse_dn(dn)
        relative = components[:len(components) - self._base_rdn_count]
        return NAME_SEPARATOR.join(value for _, value, _ in reversed(relative))

    def node_dn(self, node: Union[Group, Stem]) -> str:
        if isinstance(node, Group):
            return self.group_dn(node.name)
        return self.stem_dn(node.name)

    # Searches

    def _search(self, search_base: str, search_filter: str, scope=SUBTREE,
                attributes: Optional[List[str]] = None) -> List[Any]:
        """
        Run a (paged) search and return all entries.

        A missing search base yields an empty result rather than an error.

        Raises:
            RegistryQueryError: If not connected or the search fails
        """
        if not self._connected:
            raise RegistryQueryError("Not connected to registry")

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=scope,
                    attributes=attributes or [],
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )

                if not success:
                    if self.connection.result.get('result') == NO_SUCH_OBJECT:
                        return entries
                    raise RegistryQueryError(f"Search failed: {self.connection.result}")

                entries.extend(self.connection.entries)

                cookie = (self.connection.result.get('controls') or {}) \
                    .get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
                if not cookie:
                    break
        except LDAPException as e:
            raise RegistryQueryError(f"Registry query failed: {e}")

        return entries

    @staticmethod
    def _entry_value(entry, attribute: str) -> Optional[Any]:
        """First value of ``attribute``, so multi-valued attributes such as ``cn`` read as one value."""
        if not hasattr(entry, attribute):
            return None
        values = getattr(entry, attribute).values
        if not values:
            return None
        return values[0] or None

    @staticmethod
    def _entry_values(entry, attribute: str) -> List[Any]:
        if not hasattr(entry, attribute):
            return []
        return list(getattr(entry, attribute).values)

    def _group_from_entry(self, entry) -> Group:
        name = self.name_from_dn(str(entry.entry_dn))
        return Group(
            name,
            display_extension=self._entry_value(entry, 'displayName'),
            description=self._entry_value(entry, 'description'),
            uuid=self._entry_value(entry, 'entryUUID')
        )

    def _stem_from_entry(self, entry) -> Stem:
        name = self.name_from_dn(str(entry.entry_dn))
        return Stem(name, display_name=self._entry_value(entry, 'description'),
                    uuid=self._entry_value(entry, 'entryUUID'))

    # SourceRegistry implementation

    def find_group_by_name(self, name: str) -> Optional[Group]:
        entries = self._search(
            self.group_dn(name),
            f"(objectClass={self.group_object_class})",
            scope=BASE,
            attributes=['displayName', 'description', 'entryUUID']
        )
        if not entries:
            logger.debug(f"Group not found in registry: {name}")
            return None
        return self._group_from_entry(entries[0])

    def find_stem_by_name(self, name: str) -> Optional[Stem]:
        if name == ROOT_STEM_NAME:
            return Stem(ROOT_STEM_NAME)

        entries = self._search(
            self.stem_dn(name),
            f"(objectClass={self.stem_object_class})",
            scope=BASE,
            attributes=['description', 'entryUUID']
        )
        if not entries:
            logger.debug(f"Stem not found in registry: {name}")
            return None
        return self._stem_from_entry(entries[0])

    def find_subject(self, source_id: str, subject_id: str) -> Optional[Subject]:
        if source_id != self.subject_source_id:
            logger.debug(f"Subject source '{source_id}' is not served by this registry")
            return None

        search_filter = f"(&{self.user_filter}({self.subject_id_attribute}={escape_filter_chars(subject_id)}))"
        entries = self._search(self.user_base_dn, search_filter,
                               attributes=SUBJECT_ATTRIBUTES + [self.subject_id_attribute])
        if not entries:
            logger.debug(f"Subject not found in registry: {source_id}/{subject_id}")
            return None
        if len(entries) > 1:
            logger.warning(f"Multiple registry entries match subject {subject_id}, using the first")

        entry = entries[0]
        attributes = {}
        for attribute in SUBJECT_ATTRIBUTES:
            value = self._entry_value(entry, attribute)
            if value:
                attributes[attribute] = value
        if 'mail' in attributes:
            attributes['email'] = attributes['mail']

        name = attributes.get('displayName') or attributes.get('cn') or subject_id
        return Subject(subject_id, source_id, name=name, attributes=attributes,
                       subject_type=SUBJECT_TYPE_PERSON)

    def get_group_members(self, group: Group) -> List[Member]:
        entries = self._search(self.group_dn(group.name), '(objectClass=*)', scope=BASE,
                               attributes=['member'])
        if not entries:
            raise RegistryQueryError(f"Group not found: {group.name}")

        member_dns = self._entry_values(entries[0], 'member')
        logger.debug(f"Found {len(member_dns)} member entries in group {group.name}")

        members = []
        for member_dn in member_dns:
            member_entries = self._search(member_dn, '(objectClass=*)', scope=BASE,
                                          attributes=['objectClass', self.subject_id_attribute])
            if not member_entries:
                logger.warning(f"Member {member_dn} of group {group.name} not found, skipping")
                continue

            entry = member_entries[0]
            object_classes = [str(oc).lower() for oc in self._entry_values(entry, 'objectClass')]
            if self.group_object_class.lower() in object_classes:
                members.append(Member(self.name_from_dn(member_dn), GROUP_SOURCE_ID, SUBJECT_TYPE_GROUP))
                continue

            subject_id = self._entry_value(entry, self.subject_id_attribute)
            if not subject_id:
                logger.warning(f"Member {member_dn} has no {self.subject_id_attribute}, skipping")
                continue
            members.append(Member(str(subject_id), self.subject_source_id, SUBJECT_TYPE_PERSON))

        return members

    def _marker_filter(self, marker: str) -> str:
        return f"({self.marker_attribute}={escape_filter_chars(marker)})"

    def has_assignment(self, node: Union[Group, Stem], marker: str) -> bool:
        entries = self._search(self.node_dn(node), self._marker_filter(marker), scope=BASE)
        return len(entries) > 0

    def find_stems_with_assignment(self, marker: str) -> List[Stem]:
        search_filter = f"(&(objectClass={self.stem_object_class}){self._marker_filter(marker)})"
        stems = []
        for entry in self._search(self.base_dn, search_filter, attributes=['description', 'entryUUID']):
            stems.append(self._stem_from_entry(entry))
        logger.info(f"Found {len(stems)} stems marked with {marker}")
        return stems

    def find_groups_with_assignment(self, marker: str) -> List[Group]:
        search_filter = f"(&(objectClass={self.group_object_class}){self._marker_filter(marker)})"
        groups = []
        for entry in self._search(self.base_dn, search_filter,
                                  attributes=['displayName', 'description', 'entryUUID']):
            groups.append(self._group_from_entry(entry))
        logger.info(f"Found {len(groups)} groups marked with {marker}")
        return groups

    def find_descendant_groups(self, stem: Stem) -> List[Group]:
        entries = self._search(self.stem_dn(stem.name), f"(objectClass={self.group_object_class})",
                               attributes=['displayName', 'description', 'entryUUID'])
        return [self._group_from_entry(entry) for entry in entries]

    def test_connection(self) -> bool:
        """
        Test registry connection without throwing exceptions.

        Returns:
            True if the base DN can be read
        """
        try:
            if not self._connected:
                self.connect(max_retries=1, retry_wait=0)
            return len(self._search(self.base_dn, '(objectClass=*)', scope=BASE)) > 0
        except Exception as e:
            logger.debug(f"Registry connection test failed: {e}")
            return False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
