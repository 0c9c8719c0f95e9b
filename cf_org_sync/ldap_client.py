"""
LDAP client for connecting to and querying LDAP directories.

This module resolves an LDAP group by name and returns its members with the
user id, email and DN needed to provision UAA accounts.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError
from ldap3.utils.conv import escape_filter_chars

from cf_org_sync.logging_setup import security_logger
from cf_org_sync.models import DirectoryMember
from cf_org_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for group membership lookups.

    Groups are found by cn under group_search_base. Their member attribute
    holds either member DNs (member, uniqueMember) or user ids (memberUid).
    """

    DN_MEMBER_ATTRIBUTES = ('member', 'uniquemember')

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_search_base = config.get('user_search_base', '')
        self.group_search_base = config.get('group_search_base', '')
        self.user_name_attribute = config.get('user_name_attribute', 'uid')
        self.user_mail_attribute = config.get('user_mail_attribute', 'mail')
        self.group_member_attribute = config.get('group_member_attribute', 'member')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: int = 3, retry_wait: float = 5) -> bool:
        """
        Establish connection to LDAP server, retrying when the socket cannot be opened.

        A rejected bind is not retried.

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max(1, max_retries),
                delay=retry_wait,
                exceptions=(LDAPSocketOpenError,),
                on_retry=create_retry_callback("LDAP connection")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                security_logger.log_authentication_attempt('ldap', self.bind_dn, False)
                raise LDAPConnectionError(f"Bind failed: {self.connection.result}")
        except LDAPSocketOpenError:
            self._discard_connection()
            raise
        except LDAPException as e:
            self._discard_connection()
            raise LDAPConnectionError(f"LDAP connection failed: {e}")
        except LDAPConnectionError:
            self._discard_connection()
            raise

        security_logger.log_authentication_attempt('ldap', self.bind_dn, True)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error discarding LDAP connection: {e}")
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

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def get_group_members(self, group_name: str) -> List[DirectoryMember]:
        """
        Retrieve the members of an LDAP group.

        Args:
            group_name: cn of the group

        Returns:
            Members in directory order; an unknown group yields an empty list

        Raises:
            LDAPQueryError: If a query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.info(f"Getting users for group {group_name}")
        try:
            member_values = self._get_member_values(group_name)
            members = []
            for value in member_values:
                member = self._lookup_member(value)
                if member:
                    members.append(member)
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed for group {group_name}: {e}")

        logger.info(f"Retrieved {len(members)} members of group {group_name}")
        return members

    def _get_member_values(self, group_name: str) -> List[str]:
        search_filter = f"(cn={escape_filter_chars(group_name)})"
        success = self.connection.search(
            search_base=self.group_search_base,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=[self.group_member_attribute]
        )
        if not success or not self.connection.entries:
            logger.warning(f"Group {group_name} not found under {self.group_search_base}")
            return []

        values = self._attribute_values(self.connection.entries[0], self.group_member_attribute)
        logger.debug(f"Found {len(values)} member values in group {group_name}")
        return values

    def _lookup_member(self, value: str) -> Optional[DirectoryMember]:
        """Resolve one member attribute value (a DN or a user id) to a DirectoryMember."""
        attributes = [self.user_name_attribute, self.user_mail_attribute]
        if self.group_member_attribute.lower() in self.DN_MEMBER_ATTRIBUTES:
            success = self.connection.search(
                search_base=value,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=attributes
            )
        else:
            success = self.connection.search(
                search_base=self.user_search_base,
                search_filter=f"({self.user_name_attribute}={escape_filter_chars(value)})",
                search_scope=SUBTREE,
                attributes=attributes
            )

        if not success or not self.connection.entries:
            logger.warning(f"Group member {value} not found in directory")
            return None

        entry = self.connection.entries[0]
        user_ids = self._attribute_values(entry, self.user_name_attribute)
        if not user_ids:
            logger.warning(f"User entry has no {self.user_name_attribute}: {entry.entry_dn}")
            return None

        emails = self._attribute_values(entry, self.user_mail_attribute)
        return DirectoryMember(
            user_id=user_ids[0],
            email=emails[0] if emails else '',
            user_dn=str(entry.entry_dn)
        )

    @staticmethod
    def _attribute_values(entry, attribute: str) -> List[str]:
        """Values of an attribute on an entry, matched case-insensitively."""
        for name, values in entry.entry_attributes_as_dict.items():
            if name.lower() == attribute.lower():
                return [str(v) for v in values if v]
        return []

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect(max_retries=1, retry_wait=0)
            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except (LDAPException, LDAPConnectionError) as e:
            logger.warning(f"LDAP connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
