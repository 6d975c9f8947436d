"""
LDAP client for reading the source directory.

This module connects to LDAP / Active Directory servers and enumerates users,
groups, deleted users and group members, expanding nested groups.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional, Tuple

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ldap_scim_sync.models import SourceUser, SourceGroup, SourceMember, MEMBER_USER, normalize_key
from ldap_scim_sync.pagination import drain_pages, PaginationError

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
SHOW_DELETED_OID = '1.2.840.113556.1.4.417'

# userAccountControl flag ACCOUNTDISABLE
UAC_ACCOUNT_DISABLE = 0x2

GROUP_OBJECT_CLASSES = ('group', 'groupofnames', 'groupofuniquenames', 'posixgroup')

LDAP_NO_SUCH_OBJECT = 32


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for the source directory.

    Group members are read from the group's member attribute; members that are
    themselves groups are expanded recursively.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
            error_handling: Retry settings for the initial connection
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.group_base_dn = config.get('group_base_dn', '') or self.user_base_dn
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_filter = config.get('group_filter', '(objectClass=group)')

        self.email_attribute = config.get('email_attribute', 'mail')
        self.username_attribute = config.get('username_attribute', 'sAMAccountName')
        self.user_id_attribute = config.get('user_id_attribute', 'objectGUID')
        self.group_id_attribute = config.get('group_id_attribute', 'objectGUID')
        self.group_name_attribute = config.get('group_name_attribute', 'cn')
        self.member_attribute = config.get('member_attribute', 'member')
        self.suspended_attribute = config.get('suspended_attribute', 'userAccountControl')

        self.include_deleted_users = config.get('include_deleted_users', False)
        self.deleted_users_base_dn = config.get('deleted_users_base_dn', '')

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

        error_config = error_handling or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def user_attributes(self) -> List[str]:
        attributes = [
            'objectClass', 'givenName', 'sn', self.email_attribute,
            self.username_attribute, self.user_id_attribute, self.suspended_attribute
        ]
        return list(dict.fromkeys(attributes))

    @property
    def group_attributes(self) -> List[str]:
        attributes = ['objectClass', 'mail', 'description', self.group_name_attribute, self.group_id_attribute]
        return list(dict.fromkeys(attributes))

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

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
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPConnectionError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring unbind failure on a failed connection: {e}")
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
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

    def _paged_search(self, search_base: str, search_filter: str, attributes: List[str],
                      controls: Optional[List[Tuple]] = None) -> List[Any]:
        """Run a subtree search and return the entries of every page."""
        self._require_connection()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        def fetch_page(cookie):
            try:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie,
                    controls=controls
                )
            except LDAPException as e:
                raise LDAPQueryError(f"Paged search failed: {e}")

            result = self.connection.result or {}
            code = result.get('result', 0)
            if code == LDAP_NO_SUCH_OBJECT:
                logger.warning(f"Search base does not exist: {search_base}")
                return [], None
            if code != 0:
                raise LDAPQueryError(f"Search failed: {result.get('description')} {result.get('message', '')}")

            paged = (result.get('controls') or {}).get(PAGED_RESULTS_OID) or {}
            next_cookie = (paged.get('value') or {}).get('cookie')
            return list(self.connection.entries), next_cookie

        try:
            return drain_pages(fetch_page, description=f"LDAP search {search_filter}")
        except PaginationError as e:
            raise LDAPQueryError(str(e))

    def _read_entry(self, dn: str, attributes: List[str]) -> Optional[Any]:
        """Read a single entry by DN; returns None when it does not exist."""
        try:
            self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=attributes
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Failed to read {dn}: {e}")

        if not self.connection.entries:
            return None
        return self.connection.entries[0]

    def _combine_filter(self, base_filter: str, extra_filter: Optional[str]) -> str:
        if not extra_filter:
            return base_filter
        return f"(&{base_filter}{extra_filter})"

    def list_users(self, search_filter: Optional[str] = None) -> List[SourceUser]:
        """
        List users matching the configured user filter.

        Args:
            search_filter: Additional LDAP filter ANDed with ``user_filter``

        Returns:
            Users that have an email or username
        """
        entries = self._paged_search(
            self.user_base_dn or self._get_domain_base(),
            self._combine_filter(self.user_filter, search_filter),
            self.user_attributes
        )

        users = [user for user in (self._entry_to_user(entry) for entry in entries) if user]
        logger.info(f"Retrieved {len(users)} users from LDAP")
        return users

    def list_deleted_users(self) -> List[SourceUser]:
        """
        List users removed from the directory.

        Reads the Active Directory Deleted Objects container with the
        show-deleted control. Returns an empty list unless
        ``include_deleted_users`` is enabled.
        """
        if not self.include_deleted_users:
            return []

        search_base = self.deleted_users_base_dn or f"CN=Deleted Objects,{self._get_domain_base()}"
        entries = self._paged_search(
            search_base,
            '(&(isDeleted=TRUE)(objectClass=user))',
            self.user_attributes,
            controls=[(SHOW_DELETED_OID, True, None)]
        )

        users = []
        for entry in entries:
            user = self._entry_to_user(entry)
            if user:
                user.suspended = True
                users.append(user)

        logger.info(f"Retrieved {len(users)} deleted users from LDAP")
        return users

    def list_groups(self, search_filter: Optional[str] = None) -> List[SourceGroup]:
        """
        List groups matching the configured group filter.

        Args:
            search_filter: Additional LDAP filter ANDed with ``group_filter``
        """
        entries = self._paged_search(
            self.group_base_dn or self._get_domain_base(),
            self._combine_filter(self.group_filter, search_filter),
            self.group_attributes
        )

        groups = [group for group in (self._entry_to_group(entry) for entry in entries) if group]
        logger.info(f"Retrieved {len(groups)} groups from LDAP")
        return groups

    def list_group_members(self, group: SourceGroup) -> List[SourceMember]:
        """
        Return the user members of a group, expanding nested groups.

        Each group is visited once, so membership cycles terminate, and each
        user appears at most once in the result.

        Args:
            group: Group to expand

        Returns:
            User members in discovery order
        """
        self._require_connection()

        members = []
        seen_users = set()
        visited_groups = set()
        pending = [group.dn]

        while pending:
            group_dn = pending.pop(0)
            if normalize_key(group_dn) in visited_groups:
                continue
            visited_groups.add(normalize_key(group_dn))

            group_entry = self._read_entry(group_dn, [self.member_attribute])
            if group_entry is None:
                logger.warning(f"Group not found while expanding members: {group_dn}")
                continue

            for member_dn in _values(group_entry, self.member_attribute):
                if normalize_key(member_dn) in seen_users:
                    continue

                entry = self._read_entry(member_dn, self.user_attributes)
                if entry is None:
                    logger.debug(f"Member entry not found: {member_dn}")
                    continue

                if _is_group(entry):
                    if normalize_key(member_dn) not in visited_groups:
                        logger.debug(f"Expanding nested group {member_dn} of {group.name}")
                        pending.append(member_dn)
                    continue

                seen_users.add(normalize_key(member_dn))
                user = self._entry_to_user(entry)
                if user:
                    members.append(SourceMember(dn=user.dn, kind=MEMBER_USER, user=user))

        logger.debug(f"Group '{group.name}' has {len(members)} members after expansion")
        return members

    def get_user(self, email: str) -> Optional[SourceUser]:
        """Find a user by email; returns None when there is no match."""
        search_filter = f"({self.email_attribute}={escape_filter_chars(email)})"
        users = self.list_users(search_filter)
        if not users:
            return None
        if len(users) > 1:
            raise LDAPQueryError(f"More than one LDAP user has email {email}")
        return users[0]

    def _entry_to_user(self, entry) -> Optional[SourceUser]:
        """Build a SourceUser from an LDAP entry; None when it has no identifier."""
        dn = str(entry.entry_dn)
        email = _value(entry, self.email_attribute) or ''
        username = _value(entry, self.username_attribute) or ''

        if not email and not username:
            logger.warning(f"User entry has no identifier: {dn}")
            return None

        return SourceUser(
            id=_identifier(_value(entry, self.user_id_attribute)) or dn,
            email=str(email),
            dn=dn,
            username=str(username),
            given_name=str(_value(entry, 'givenName') or ''),
            family_name=str(_value(entry, 'sn') or ''),
            suspended=self._is_suspended(entry),
        )

    def _entry_to_group(self, entry) -> Optional[SourceGroup]:
        dn = str(entry.entry_dn)
        name = _value(entry, self.group_name_attribute)
        if not name:
            logger.warning(f"Group entry has no {self.group_name_attribute}: {dn}")
            return None

        return SourceGroup(
            id=_identifier(_value(entry, self.group_id_attribute)) or dn,
            name=str(name),
            dn=dn,
            email=str(_value(entry, 'mail') or ''),
            description=str(_value(entry, 'description') or ''),
        )

    def _is_suspended(self, entry) -> bool:
        value = _value(entry, self.suspended_attribute)
        if value is None:
            return False

        if self.suspended_attribute.lower() == 'useraccountcontrol':
            try:
                return bool(int(value) & UAC_ACCOUNT_DISABLE)
            except (TypeError, ValueError):
                logger.warning(f"Invalid userAccountControl value on {entry.entry_dn}: {value}")
                return False

        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ('true', '1', 'yes')

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if self.user_base_dn:
            return self.user_base_dn

        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except (LDAPException, LDAPConnectionError) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


def _values(entry, attribute: str) -> List[Any]:
    """Return all values of an attribute, matching the name case-insensitively."""
    attributes = entry.entry_attributes_as_dict
    for name, values in attributes.items():
        if name.lower() == attribute.lower():
            return list(values or [])
    return []


def _value(entry, attribute: str) -> Optional[Any]:
    values = _values(entry, attribute)
    return values[0] if values else None


def _identifier(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.hex()
    return str(value).strip('{}') or None


def _is_group(entry) -> bool:
    return any(str(oc).lower() in GROUP_OBJECT_CLASSES for oc in _values(entry, 'objectClass'))
