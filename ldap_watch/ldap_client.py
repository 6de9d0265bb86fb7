"""
LDAP client for the directory the watcher observes.

This module wraps ldap3 for the three ways the watcher talks to the
directory: single-account lookups, a paged enumeration of every user
account (first-run seed), and the long-lived change-notification search.
"""

import ssl
import logging
import threading
from typing import Dict, Any, Callable, Iterator, Optional
from ldap3 import Server, Connection, Tls, ALL, SYNC, ASYNC_STREAM, BASE, LEVEL, SUBTREE, ALL_ATTRIBUTES
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)

# LDAP_SERVER_NOTIFICATION_OID (Active Directory change notification control)
NOTIFICATION_CONTROL_OID = '1.2.840.113556.1.4.528'

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32

SEARCH_SCOPES = {
    'base': BASE,
    'onelevel': LEVEL,
    'level': LEVEL,
    'subtree': SUBTREE,
}


class DirectoryError(Exception):
    """Base exception for directory errors."""
    pass


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory cannot be reached or a request cannot be served."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a directory search returns an error result."""
    pass


def resolve_scope(scope: str):
    """Map a configured scope name to the ldap3 constant."""
    try:
        return SEARCH_SCOPES[str(scope).lower()]
    except KeyError:
        raise ValueError(f"Unknown search scope: {scope}")


class DirectoryClient:
    """
    ldap3-backed directory access.

    One synchronous connection is kept for lookups; notification searches get
    their own asynchronous streaming connection because they stay open for
    as long as the subscription lives.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the directory client with the ``ldap`` config section.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=user)')
        self.account_attribute = config.get('account_attribute', 'sAMAccountName')
        self.identity_attribute = config.get('identity_attribute', 'objectSid')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.server = None
        self.connection = None
        # ldap3 leaves response/result on the connection after search returns
        self._lock = threading.RLock()

    def connect(self) -> Connection:
        """
        Open and bind the lookup connection.

        Raises:
            DirectoryUnavailable: If the server cannot be reached or the bind fails
        """
        with self._lock:
            self.connection = self._open_connection(SYNC)
        logger.info(f"Connected and bound to directory {self.server_url}")
        return self.connection

    def disconnect(self):
        """Close the lookup connection."""
        with self._lock:
            if self.connection is not None:
                self._close(self.connection)
                self.connection = None

    def reconnect(self):
        """
        Replace the lookup connection with a fresh one.

        The old connection is closed best-effort; a failure to close it is
        logged and otherwise ignored.
        """
        with self._lock:
            old_connection = self.connection
            self.connection = self._open_connection(SYNC)
            if old_connection is not None:
                self._close(old_connection)
        logger.info(f"Reconnected to directory {self.server_url}")

    def _close(self, connection: Connection):
        try:
            connection.unbind()
        except Exception as e:
            logger.warning(f"Failed to close old directory connection: {e}")

    def _get_server(self) -> Server:
        if self.server is None:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        return self.server

    def _open_connection(self, strategy) -> Connection:
        """Create, open, optionally StartTLS, and bind a connection."""
        try:
            connection = Connection(
                self._get_server(),
                user=self.bind_dn,
                password=self.bind_password,
                client_strategy=strategy,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            connection.open()

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise DirectoryUnavailable(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")

            return connection

        except DirectoryUnavailable:
            raise
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to connect to {self.server_url}: {e}")
        except (OSError, ValueError) as e:
            raise DirectoryUnavailable(f"Failed to connect to {self.server_url}: {e}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the LDAP connection.

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
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise DirectoryUnavailable(f"Failed to create TLS configuration: {e}")

    def get_base_dn(self) -> str:
        """Return the configured base DN, or derive it from the bind DN or server info."""
        if self.base_dn:
            return self.base_dn

        dc_parts = [part.strip() for part in self.bind_dn.split(',')
                    if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise DirectoryQueryError("Cannot determine base DN")

    def find_by_account_name(self, account_name: str) -> Optional[Dict[str, Any]]:
        """
        Look up a single user account by its account name.

        Args:
            account_name: Short login name (sAMAccountName)

        Returns:
            ``{'account_id', 'dn', 'has_valid_identity'}`` or None when absent

        Raises:
            DirectoryUnavailable: If not connected
            DirectoryQueryError: If the search fails
        """
        search_filter = (f"(&{self.user_filter}"
                         f"({self.account_attribute}={escape_filter_chars(account_name)}))")
        attributes = [self.account_attribute]
        if self.identity_attribute:
            attributes.append(self.identity_attribute)

        with self._lock:
            connection = self.connection
            if connection is None:
                raise DirectoryUnavailable("Not connected to directory")
            try:
                success = connection.search(
                    search_base=self.get_base_dn(),
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    size_limit=1
                )
            except LDAPException as e:
                raise DirectoryQueryError(f"Lookup of {account_name} failed: {e}")
            result = connection.result or {}
            response = list(connection.response or [])

        if not success:
            code = result.get('result', RESULT_SUCCESS)
            if code in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
                return None
            raise DirectoryQueryError(f"Lookup of {account_name} failed: {result}")

        for entry in response:
            if entry.get('type') != 'searchResEntry':
                continue
            entry_attributes = entry.get('attributes') or {}
            if self.identity_attribute:
                has_identity = bool(entry_attributes.get(self.identity_attribute))
            else:
                has_identity = bool(entry.get('dn'))
            return {
                'account_id': account_name,
                'dn': entry.get('dn'),
                'has_valid_identity': has_identity
            }

        return None

    def iter_user_accounts(self) -> Iterator[str]:
        """
        Enumerate the account names of every user object under the base DN.

        Uses the simple paged results control so large directories are read
        in ``page_size`` chunks.
        """
        if self.connection is None:
            raise DirectoryUnavailable("Not connected to directory")

        search_base = self.get_base_dn()
        logger.info(f"Enumerating user accounts with filter {self.user_filter} in {search_base}")

        try:
            entries = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=self.user_filter,
                search_scope=SUBTREE,
                attributes=[self.account_attribute],
                paged_size=self.page_size,
                generator=True
            )
            for entry in entries:
                if entry.get('type') != 'searchResEntry':
                    continue
                value = (entry.get('attributes') or {}).get(self.account_attribute)
                if isinstance(value, (list, tuple)):
                    value = value[0] if value else None
                if value:
                    yield str(value)
                else:
                    logger.debug(f"Skipping entry without {self.account_attribute}: {entry.get('dn')}")
        except LDAPException as e:
            raise DirectoryQueryError(f"User enumeration failed: {e}")

    def open_notification_connection(self) -> Connection:
        """Open a dedicated asynchronous streaming connection for change notifications."""
        return self._open_connection(ASYNC_STREAM)

    def register_notification(
        self,
        connection: Connection,
        root_dn: str,
        search_filter: str,
        scope: str,
        callback: Callable[[Dict[str, Any]], None],
        time_limit: int = 0
    ) -> int:
        """
        Send a search carrying the change-notification control.

        ldap3's streaming strategy hands every response for the registered
        message id to ``callback`` on its receiver thread, which is the same
        wiring ldap3 uses for its own persistent search extension.

        Returns:
            The LDAP message id of the outstanding search

        Raises:
            DirectoryUnavailable: If the search cannot be sent
        """
        strategy = connection.strategy
        try:
            with connection.connection_lock:
                strategy.streaming = False
                strategy.callback = callback
                strategy.persistent_search_message_id = None
                message_id = connection.search(
                    search_base=root_dn,
                    search_filter=search_filter,
                    search_scope=resolve_scope(scope),
                    attributes=ALL_ATTRIBUTES,
                    time_limit=time_limit,
                    controls=[(NOTIFICATION_CONTROL_OID, True, None)]
                )
                strategy.persistent_search_message_id = message_id
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to register change notification on {root_dn}: {e}")

        if not message_id:
            raise DirectoryUnavailable(f"Failed to register change notification on {root_dn}: "
                                       f"{connection.result}")
        return message_id

    def abandon(self, connection: Connection, message_id: int, unbind: bool = True):
        """Abandon an outstanding notification search and close its connection."""
        try:
            connection.abandon(message_id)
        except LDAPException as e:
            logger.warning(f"Failed to abandon notification search {message_id}: {e}")
        if unbind:
            self._close(connection)

    def test_connection(self) -> bool:
        """
        Test directory connectivity without raising.

        Returns:
            True if a rootDSE read succeeds
        """
        try:
            with self._lock:
                if self.connection is None:
                    self.connect()
                return bool(self.connection.search(
                    search_base='',
                    search_filter='(objectClass=*)',
                    search_scope=BASE,
                    attributes=['namingContexts'],
                    size_limit=1
                ))
        except (DirectoryError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
