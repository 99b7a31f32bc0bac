"""
Directory gateway backed by ldap3.

This module is the only place that talks to the directory. It looks up
groups, enumerates direct or recursive (nested) membership, and adds or
removes members. Every call can be bound to a specific server endpoint;
without one the configured default server is used. Entries are converted
to GroupRef/Principal values before they are returned.
"""

import ssl
import time
import logging
from typing import Dict, List, Any, Mapping, Optional

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls, MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import (
    LDAPException, LDAPSocketOpenError, LDAPBindError, LDAPSocketReceiveError, LDAPSocketSendError,
    LDAPSessionTerminatedByServerError
)
from ldap3.protocol.formatters.formatters import format_sid
from ldap3.utils.conv import escape_filter_chars

from group_flatten.logging_setup import audit_logger
from group_flatten.models import GroupRef, Principal

logger = logging.getLogger(__name__)

# LDAP_MATCHING_RULE_IN_CHAIN, walks nested memberOf links on the server
IN_CHAIN_RULE = '1.2.840.113556.1.4.1941'
PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'

GROUP_ATTRIBUTES = ['sAMAccountName', 'cn']
PRINCIPAL_ATTRIBUTES = ['objectSid', 'sAMAccountName', 'cn']

RESULT_NO_SUCH_ATTRIBUTE = 16
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20
RESULT_NO_SUCH_OBJECT = 32
RESULT_INSUFFICIENT_ACCESS_RIGHTS = 50
RESULT_UNWILLING_TO_PERFORM = 53
RESULT_ENTRY_ALREADY_EXISTS = 68

# the connection is unusable after any of these
SESSION_ERRORS = (LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSocketSendError,
                  LDAPSessionTerminatedByServerError)


class DirectoryError(Exception):
    """Base class for directory failures."""

    def __init__(self, message: str, result_code: Optional[int] = None):
        super().__init__(message)
        self.result_code = result_code


class DirectoryConnectionError(DirectoryError):
    """Raised when no usable connection to the directory can be made, or an open one drops."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a search or modify request fails."""
    pass


class GroupNotFoundError(DirectoryError):
    """Raised when a group looked up by name or DN does not exist."""
    pass


class DirectoryPermissionError(DirectoryError):
    """Raised when the bind account may not modify a group."""
    pass


class MemberAlreadyPresentError(DirectoryError):
    """Raised when adding a principal that is already a member."""
    pass


class MemberNotPresentError(DirectoryError):
    """Raised when removing a principal that is not a member."""
    pass


def sid_to_string(value: Any) -> Optional[str]:
    """Return a SID in S-1-... form, whether ldap3 decoded it or not."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value)
        # some directories store the SID as text
        if value.startswith(b'S-'):
            return value.decode('ascii')
        return format_sid(value)
    value = str(value)
    return value if value else None


class DirectoryGateway:
    """
    ldap3 client for the group operations a flattening run needs.

    One connection is kept per server endpoint for the lifetime of the
    gateway. ``connect()`` opens the default endpoint up front so that a
    broken directory fails the run before any pair is processed.
    """

    def __init__(self, config: Mapping[str, Any], error_config: Optional[Mapping[str, Any]] = None):
        """
        Initialize the gateway.

        Args:
            config: LDAP configuration dictionary (server_url, bind_dn, bind_password, ...)
            error_config: Retry settings (max_retries, retry_wait_seconds)
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self._connections: Dict[str, Connection] = {}
        self._servers: Dict[str, Server] = {}

    def _endpoint(self, server: Optional[str]) -> str:
        return server or self.server_url

    def _server_uri(self, endpoint: str) -> str:
        if '://' in endpoint:
            return endpoint
        scheme = 'ldaps' if self.use_ssl else 'ldap'
        return f"{scheme}://{endpoint}"

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None,
                server: Optional[str] = None) -> bool:
        """
        Open and bind a connection to one endpoint, retrying on failure.

        Args:
            max_retries: Extra attempts after the first one (uses config default if None)
            retry_wait: Seconds to wait between attempts (uses config default if None)
            server: Endpoint to connect to; defaults to the configured server

        Returns:
            True once the connection is bound

        Raises:
            DirectoryConnectionError: If connection fails after all attempts
        """
        endpoint = self._endpoint(server)
        if endpoint in self._connections:
            return True

        max_retries = self.max_retries if max_retries is None else max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait
        attempts = max_retries + 1
        uri = self._server_uri(endpoint)

        try:
            ldap_server = Server(
                uri,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {uri} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryConnectionError:
            raise
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create LDAP server for {uri}: {e}")

        last_exception = None
        for attempt in range(attempts):
            connection = None
            try:
                connection = Connection(
                    ldap_server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout,
                    raise_exceptions=False
                )

                if not connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not connection.start_tls():
                        raise LDAPException(f"Failed to start TLS: {connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not connection.bind():
                    raise LDAPBindError(f"Bind failed: {connection.result}")

                self._servers[endpoint] = ldap_server
                self._connections[endpoint] = connection
                audit_logger.log_bind_attempt(uri, self.bind_dn, True)
                logger.info(f"Connected and bound to {uri}")
                return True

            except LDAPException as e:
                last_exception = e
                audit_logger.log_bind_attempt(uri, self.bind_dn, False)
                logger.warning(f"LDAP connection attempt {attempt + 1}/{attempts} to {uri} failed: {e}")
                self._safe_unbind(connection)
                if attempt < attempts - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to {uri} after {attempts} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise DirectoryConnectionError(error_msg)

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connections.

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

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    @staticmethod
    def _safe_unbind(connection: Optional[Connection]):
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while unbinding: {e}")

    def disconnect(self):
        """Unbind every open connection."""
        for endpoint, connection in list(self._connections.items()):
            try:
                connection.unbind()
                logger.debug(f"LDAP connection to {endpoint} closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection to {endpoint}: {e}")
        self._connections.clear()
        self._servers.clear()

    def _connection(self, server: Optional[str]) -> Connection:
        endpoint = self._endpoint(server)
        if endpoint not in self._connections:
            self.connect(server=endpoint)
        return self._connections[endpoint]

    def _lost_connection(self, server: Optional[str], message: str, error: Exception) -> DirectoryConnectionError:
        """Forget a dropped connection so the next call reconnects."""
        endpoint = self._endpoint(server)
        self._safe_unbind(self._connections.pop(endpoint, None))
        self._servers.pop(endpoint, None)
        logger.warning(f"Connection to {endpoint} lost: {error}")
        return DirectoryConnectionError(f"{message}: {error}")

    def _search(self, connection: Connection, search_base: str, search_filter: str,
                attributes: List[str], scope=SUBTREE) -> List[Any]:
        """Run a paged search and return all entries."""
        entries = []
        cookie = None

        while True:
            success = connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                paged_size=self.page_size if scope == SUBTREE else None,
                paged_cookie=cookie
            )

            result = connection.result or {}
            if not success:
                code = result.get('result')
                if code == RESULT_NO_SUCH_OBJECT:
                    raise GroupNotFoundError(f"No such object: {search_base}", code)
                # a search that matched nothing is still a success
                if code not in (0, None):
                    raise DirectoryQueryError(f"Search failed in {search_base}: {result.get('description')}", code)

            entries.extend(connection.entries)

            cookie = None
            controls = result.get('controls') or {}
            if PAGED_RESULTS_CONTROL in controls:
                cookie = controls[PAGED_RESULTS_CONTROL].get('value', {}).get('cookie')
            if not cookie:
                break

        return entries

    @staticmethod
    def _attribute(entry, name: str) -> Any:
        if name in entry:
            return entry[name].value
        return None

    def _to_group(self, entry, server: Optional[str]) -> GroupRef:
        name = self._attribute(entry, 'sAMAccountName') or self._attribute(entry, 'cn')
        return GroupRef(dn=str(entry.entry_dn), name=str(name), server=server)

    def _to_principal(self, entry) -> Optional[Principal]:
        sid = None
        if 'objectSid' in entry:
            raw = entry['objectSid'].raw_values
            sid = sid_to_string(raw[0]) if raw else None
        if not sid:
            logger.debug(f"Skipping member without objectSid: {entry.entry_dn}")
            return None

        account_name = self._attribute(entry, 'sAMAccountName') or self._attribute(entry, 'cn') or sid
        return Principal(sid=sid, account_name=str(account_name), dn=str(entry.entry_dn))

    def find_groups(self, search_base: str, search_filter: str, server: Optional[str] = None) -> List[GroupRef]:
        """
        Find groups under a search base.

        Args:
            search_base: DN to search below
            search_filter: LDAP filter selecting the groups
            server: Endpoint to query

        Returns:
            Matching groups

        Raises:
            DirectoryQueryError: If the search fails
        """
        connection = self._connection(server)
        logger.debug(f"Searching groups in {search_base} with filter {search_filter}")

        try:
            entries = self._search(connection, search_base, search_filter, GROUP_ATTRIBUTES)
        except GroupNotFoundError as e:
            raise DirectoryQueryError(f"Search base does not exist: {search_base}", e.result_code)
        except SESSION_ERRORS as e:
            raise self._lost_connection(server, "Group search failed", e) from e
        except LDAPException as e:
            raise DirectoryQueryError(f"Group search failed: {e}")

        return [self._to_group(entry, server) for entry in entries]

    def get_group(self, name: str, server: Optional[str] = None) -> GroupRef:
        """
        Fetch one group by exact account name.

        Raises:
            GroupNotFoundError: If no group has that name
        """
        connection = self._connection(server)
        search_filter = f"(&(objectClass=group)(sAMAccountName={escape_filter_chars(name)}))"

        try:
            entries = self._search(connection, self.default_search_base(server), search_filter, GROUP_ATTRIBUTES)
        except SESSION_ERRORS as e:
            raise self._lost_connection(server, f"Lookup of group {name} failed", e) from e
        except LDAPException as e:
            raise DirectoryQueryError(f"Lookup of group {name} failed: {e}")

        if not entries:
            raise GroupNotFoundError(f"Group not found: {name}")
        if len(entries) > 1:
            logger.warning(f"Group name {name} is ambiguous, using {entries[0].entry_dn}")
        return self._to_group(entries[0], server)

    def get_members(self, group: GroupRef, recursive: bool, server: Optional[str] = None) -> List[Principal]:
        """
        Enumerate the principals that are members of a group.

        Args:
            group: Group to enumerate
            recursive: Expand nested groups down to their leaf principals
            server: Endpoint to query

        Returns:
            Member principals; nested groups themselves are never returned
            when recursive is set

        Raises:
            DirectoryQueryError: If the search fails
        """
        connection = self._connection(server)
        group_dn = escape_filter_chars(group.dn)

        if recursive:
            search_filter = f"(&(objectSid=*)(!(objectClass=group))(memberOf:{IN_CHAIN_RULE}:={group_dn}))"
        else:
            search_filter = f"(&(objectSid=*)(memberOf={group_dn}))"

        try:
            entries = self._search(connection, self.default_search_base(server), search_filter, PRINCIPAL_ATTRIBUTES)
        except SESSION_ERRORS as e:
            raise self._lost_connection(server, f"Member enumeration of {group.name} failed", e) from e
        except LDAPException as e:
            raise DirectoryQueryError(f"Member enumeration of {group.name} failed: {e}")

        members = [p for p in (self._to_principal(entry) for entry in entries) if p is not None]
        logger.debug(f"Group {group.name} has {len(members)} {'recursive' if recursive else 'direct'} members")
        return members

    def add_member(self, group: GroupRef, principal: Principal, server: Optional[str] = None) -> bool:
        """
        Add a principal to a group's member attribute.

        Raises:
            MemberAlreadyPresentError: If the principal is already a member
            DirectoryPermissionError: If the bind account may not modify the group
            GroupNotFoundError: If the group no longer exists
            DirectoryQueryError: For any other failure
        """
        return self._modify_member(group, principal, MODIFY_ADD, server)

    def remove_member(self, group: GroupRef, principal: Principal, server: Optional[str] = None) -> bool:
        """
        Remove a principal from a group's member attribute.

        Raises:
            MemberNotPresentError: If the principal is not a member
            DirectoryPermissionError: If the bind account may not modify the group
            GroupNotFoundError: If the group no longer exists
            DirectoryQueryError: For any other failure
        """
        return self._modify_member(group, principal, MODIFY_DELETE, server)

    def _modify_member(self, group: GroupRef, principal: Principal, operation: str,
                       server: Optional[str]) -> bool:
        if not principal.dn:
            raise DirectoryQueryError(f"Principal {principal.account_name} has no DN to write into {group.name}")

        connection = self._connection(server)
        try:
            success = connection.modify(group.dn, {'member': [(operation, [principal.dn])]})
        except SESSION_ERRORS as e:
            raise self._lost_connection(server, f"Modify of {group.name} failed", e) from e
        except LDAPException as e:
            raise DirectoryQueryError(f"Modify of {group.name} failed: {e}")

        if success:
            return True

        result = connection.result or {}
        code = result.get('result')
        description = result.get('description') or result.get('message') or 'unknown error'
        subject = f"{principal.account_name} in {group.name}"

        if operation == MODIFY_ADD and code in (RESULT_ENTRY_ALREADY_EXISTS, RESULT_ATTRIBUTE_OR_VALUE_EXISTS):
            raise MemberAlreadyPresentError(f"{subject}: already a member", code)
        if operation == MODIFY_DELETE and code in (RESULT_UNWILLING_TO_PERFORM, RESULT_NO_SUCH_ATTRIBUTE):
            raise MemberNotPresentError(f"{subject}: not a member", code)
        if code == RESULT_INSUFFICIENT_ACCESS_RIGHTS:
            raise DirectoryPermissionError(f"{subject}: insufficient access rights", code)
        if code == RESULT_NO_SUCH_OBJECT:
            raise GroupNotFoundError(f"{subject}: group no longer exists", code)
        raise DirectoryQueryError(f"{subject}: {description}", code)

    def default_search_base(self, server: Optional[str] = None) -> str:
        """
        Return the domain root, used when no search base is configured.

        Taken from the server's default naming context, falling back to the
        DC= components of the bind DN.
        """
        endpoint = self._endpoint(server)
        self._connection(server)
        ldap_server = self._servers.get(endpoint)

        info = getattr(ldap_server, 'info', None)
        if info is not None:
            other = getattr(info, 'other', None) or {}
            default_context = other.get('defaultNamingContext')
            if default_context:
                return default_context[0]
            if getattr(info, 'naming_contexts', None):
                return info.naming_contexts[0]

        dc_parts = [part.strip() for part in self.bind_dn.split(',') if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        raise DirectoryQueryError("Cannot determine the domain root naming context")

    def validate_search_base(self, search_base: str, server: Optional[str] = None) -> bool:
        """
        Check that a search base exists and is readable.

        Returns:
            True if the base object could be read
        """
        connection = self._connection(server)
        try:
            entries = self._search(connection, search_base, '(objectClass=*)', ['objectClass'], scope=BASE)
        except (DirectoryError, LDAPException) as e:
            logger.error(f"Search base {search_base} is not usable: {e}")
            return False

        if not entries:
            logger.error(f"Search base {search_base} not found")
            return False
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
