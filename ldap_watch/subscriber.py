"""
Change feed subscription against the directory.

A subscription is one asynchronous search carrying the change-notification
control. The directory pushes an entry every time a matching object changes;
ldap3 hands each entry to this module on its receiver thread and it is
forwarded to the listener as a ``ChangeEvent``.

Subscriptions do not live forever. The search is sent with a time limit and
the server may end it at any point (searchResDone), so owners are expected
to poll ``needs_renewal`` and subscribe again.
"""

import time
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from ldap_watch.events import ChangeEvent
from ldap_watch.ldap_client import DirectoryUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TIME_TO_LIVE = 24 * 60 * 60


class SubscriptionHandle:
    """One outstanding notification search."""

    def __init__(self, root_dn: str, search_filter: str, scope: str, connection,
                 created_at: float, time_to_live: float):
        self.root_dn = root_dn
        self.search_filter = search_filter
        self.scope = scope
        self.connection = connection
        self.message_id = None
        self.created_at = created_at
        self.expires_at = created_at + time_to_live
        self.events_received = 0
        self.end_reason = None
        self._ended = threading.Event()
        self._released = False

    @property
    def active(self) -> bool:
        return not self._ended.is_set()

    @property
    def released(self) -> bool:
        return self._released

    def mark_ended(self, reason: str):
        self.end_reason = reason
        self._ended.set()

    def __repr__(self):
        return (f"SubscriptionHandle(root_dn={self.root_dn!r}, filter={self.search_filter!r}, "
                f"scope={self.scope!r}, message_id={self.message_id}, active={self.active})")


class ChangeFeedSubscriber:
    """
    Owns the registry of outstanding notification searches.

    The listener is called once per changed entry, in the order the server
    delivered them, on whatever thread ldap3 delivers on. Calls are not
    serialized here.
    """

    def __init__(self, directory, listener: Callable[[ChangeEvent], None],
                 time_to_live: float = DEFAULT_TIME_TO_LIVE,
                 clock: Callable[[], float] = time.monotonic):
        self.directory = directory
        self.listener = listener
        self.time_to_live = time_to_live
        self.clock = clock
        self._handles: List[SubscriptionHandle] = []
        self._lock = threading.Lock()

    @property
    def handles(self) -> List[SubscriptionHandle]:
        with self._lock:
            return list(self._handles)

    def subscribe(self, root_dn: str, search_filter: str, scope: str = 'subtree') -> SubscriptionHandle:
        """
        Register a change-notification search and return immediately.

        Raises:
            DirectoryUnavailable: If the connection or the registration fails
        """
        connection = self.directory.open_notification_connection()
        handle = SubscriptionHandle(root_dn, search_filter, scope, connection,
                                    created_at=self.clock(), time_to_live=self.time_to_live)

        try:
            handle.message_id = self.directory.register_notification(
                connection, root_dn, search_filter, scope,
                callback=lambda response: self._on_response(handle, response),
                time_limit=int(self.time_to_live)
            )
        except (DirectoryUnavailable, ValueError):
            self._close_quietly(connection)
            raise

        with self._lock:
            self._handles.append(handle)

        logger.info(f"Subscribed to changes under {root_dn} (filter={search_filter}, scope={scope}, "
                    f"message_id={handle.message_id})")
        return handle

    def _close_quietly(self, connection):
        try:
            connection.unbind()
        except Exception as e:
            logger.warning(f"Failed to close notification connection: {e}")

    def _on_response(self, handle: SubscriptionHandle, response: Dict[str, Any]):
        if handle.released:
            return

        response_type = response.get('type')
        if response_type == 'searchResEntry':
            handle.events_received += 1
            try:
                event = ChangeEvent.from_ldap_response(response)
            except Exception as e:
                logger.error(f"Could not decode change notification for {response.get('dn')}: {e}")
                return
            try:
                self.listener(event)
            except Exception:
                logger.exception(f"Change listener failed for {event.distinguished_name}")
        elif response_type == 'searchResRef':
            logger.debug(f"Ignoring referral on subscription {handle.message_id}")
        else:
            result = response.get('description') or response.get('result') or response_type
            logger.warning(f"Subscription {handle.message_id} on {handle.root_dn} ended by server: {result}")
            handle.mark_ended(f"server ended search: {result}")

    def needs_renewal(self, handle: SubscriptionHandle, now: Optional[float] = None) -> bool:
        """True if the subscription ended, expired, or lost its connection."""
        if not handle.active:
            return True
        now = self.clock() if now is None else now
        if now >= handle.expires_at:
            return True
        return bool(getattr(handle.connection, 'closed', False))

    def release(self, handle: SubscriptionHandle):
        """Abandon the search behind ``handle``. Safe to call more than once."""
        with self._lock:
            if handle.released:
                return
            handle._released = True
            if handle in self._handles:
                self._handles.remove(handle)

        handle.mark_ended(handle.end_reason or "released")
        if handle.message_id is not None:
            self.directory.abandon(handle.connection, handle.message_id)
        else:
            self._close_quietly(handle.connection)
        logger.info(f"Released subscription {handle.message_id} on {handle.root_dn}")

    def release_all(self):
        for handle in self.handles:
            self.release(handle)
