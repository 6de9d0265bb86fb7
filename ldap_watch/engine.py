"""
Reaction engine: turns change notifications into at-most-one downstream
action per account.

Every event goes through the same pipeline:

1. classify: only objects tagged with the user object class go further, and
   the event must carry an account name;
2. wait out the settle delay (a create can be announced before it is
   queryable, or announced and then rolled back);
3. confirm the account exists in the directory;
4. check the ledger, invoke the action, and mark the ledger.

Step 1 runs on the delivery thread. Steps 2-4 run per event on a timer and a
worker pool so a slow confirmation never holds up the feed. Step 4 is done
under a per-account lock; the ledger, not delivery order, is what prevents a
second reaction.
"""

import enum
import time
import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Set, Tuple

from ldap_watch.actions.base import DownstreamActionFailure
from ldap_watch.events import ChangeEvent, MalformedEvent
from ldap_watch.ldap_client import DirectoryUnavailable
from ldap_watch.ledger import LedgerError, LedgerWriteFailure

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 30


class EventOutcome(enum.Enum):
    DISCARDED_NOT_USER = 'discarded_not_user'
    DISCARDED_MALFORMED = 'discarded_malformed'
    DISCARDED_NOT_FOUND = 'discarded_not_found'
    SKIPPED_ALREADY_REACTED = 'skipped_already_reacted'
    SKIPPED_PRE_EXISTING = 'skipped_pre_existing'
    DONE = 'done'
    FAILED = 'failed'


class KeyedLock:
    """Mutual exclusion per key; entries are dropped once no thread holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self):
        with self._guard:
            return len(self._locks)


class ReactionEngine:
    """
    Orchestrates verifier, ledger and downstream action for each change event.

    Args:
        verifier: object with ``exists(account_id) -> bool``
        ledger: ``Ledger`` shared with the rest of the process
        action: ``ReactionActionBase`` to run for confirmed new accounts
        settle_delay: seconds to wait before confirming an event
        max_workers: size of the pipeline worker pool
        user_object_class: object class that marks a user account
        account_attribute: attribute holding the account identifier
        on_failure: optional ``callback(account_id, error)`` for operator alerts
    """

    def __init__(self, verifier, ledger, action,
                 settle_delay: float = DEFAULT_SETTLE_DELAY,
                 max_workers: int = 8,
                 user_object_class: str = 'user',
                 account_attribute: str = 'sAMAccountName',
                 on_failure: Optional[Callable[[str, Exception], None]] = None,
                 timer_factory: Callable = threading.Timer):
        self.verifier = verifier
        self.ledger = ledger
        self.action = action
        self.settle_delay = settle_delay
        self.user_object_class = user_object_class
        self.account_attribute = account_attribute
        self.on_failure = on_failure
        self.timer_factory = timer_factory

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='reaction')
        self._account_locks = KeyedLock()
        self._state_lock = threading.RLock()
        self._timers: Set[threading.Timer] = set()
        self._futures = set()
        self._accepting = True
        self._stats = Counter()

    @property
    def stats(self) -> Dict[str, int]:
        with self._state_lock:
            return dict(self._stats)

    @property
    def pending(self) -> int:
        with self._state_lock:
            return len(self._timers) + len(self._futures)

    def _count(self, key: str):
        with self._state_lock:
            self._stats[key] += 1

    def _record(self, outcome: EventOutcome) -> EventOutcome:
        self._count(outcome.value)
        return outcome

    def classify(self, event: ChangeEvent) -> Tuple[Optional[EventOutcome], Optional[str]]:
        """
        Decide whether an event can be a new user account.

        Returns:
            ``(outcome, None)`` when the event is discarded, otherwise
            ``(None, account_id)``
        """
        logger.info(f"Changed: {event.distinguished_name}")

        try:
            if not event.is_object_of_class(self.user_object_class):
                logger.info(f"Not a user account: {event.distinguished_name}")
                return EventOutcome.DISCARDED_NOT_USER, None

            if logger.isEnabledFor(logging.DEBUG):
                for name, values in event.attributes.items():
                    for value in values:
                        logger.debug(f"\t{name}: {value}")

            return None, event.account_id(self.account_attribute)
        except MalformedEvent as e:
            logger.warning(f"Discarding malformed event: {e}")
            return EventOutcome.DISCARDED_MALFORMED, None

    def submit(self, event: ChangeEvent) -> Optional[EventOutcome]:
        """
        Accept an event from the change feed without blocking.

        Returns:
            The outcome if the event was discarded immediately, otherwise None
            (the pipeline has been scheduled)
        """
        self._count('received')
        outcome, account_id = self.classify(event)
        if outcome is not None:
            return self._record(outcome)

        with self._state_lock:
            if not self._accepting:
                logger.warning(f"Engine is shutting down; dropping event for {account_id}")
                return None
            if self.settle_delay > 0:
                timer = self.timer_factory(self.settle_delay, self._dispatch, args=(account_id, event))
                timer.daemon = True
                self._timers.add(timer)
            else:
                timer = None
                self._submit_locked(account_id, event)

        if timer is not None:
            logger.debug(f"Confirming {account_id} in {self.settle_delay} seconds")
            timer.start()
        return None

    def _dispatch(self, account_id: str, event: ChangeEvent):
        with self._state_lock:
            self._timers.discard(threading.current_thread())
            self._submit_locked(account_id, event)

    def _submit_locked(self, account_id: str, event: ChangeEvent):
        try:
            future = self._executor.submit(self._run_pipeline, account_id, event)
        except RuntimeError:
            logger.warning(f"Worker pool already stopped; dropping event for {account_id}")
            return
        self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future):
        with self._state_lock:
            self._futures.discard(future)

    def _run_pipeline(self, account_id: str, event: ChangeEvent) -> EventOutcome:
        try:
            return self.confirm_and_react(account_id, event)
        except Exception as e:
            logger.exception(f"Unexpected error processing {account_id}")
            self._notify_failure(account_id, e)
            return self._record(EventOutcome.FAILED)

    def process(self, event: ChangeEvent) -> EventOutcome:
        """Run the whole pipeline for one event synchronously, without the settle delay."""
        self._count('received')
        outcome, account_id = self.classify(event)
        if outcome is not None:
            return self._record(outcome)
        return self.confirm_and_react(account_id, event)

    def confirm_and_react(self, account_id: str, event: Optional[ChangeEvent] = None) -> EventOutcome:
        """Confirm existence, dedup against the ledger, react, and mark."""
        try:
            exists = self.verifier.exists(account_id)
        except DirectoryUnavailable as e:
            logger.error(f"Could not confirm {account_id}: {e}")
            self._notify_failure(account_id, e)
            return self._record(EventOutcome.FAILED)

        if not exists:
            logger.info(f"Change received for {account_id}, but it was not found in the directory")
            return self._record(EventOutcome.DISCARDED_NOT_FOUND)

        with self._account_locks.hold(account_id):
            try:
                if self.ledger.has_reacted(account_id):
                    logger.info(f"{account_id} has already been handled")
                    return self._record(EventOutcome.SKIPPED_ALREADY_REACTED)
                if self.ledger.exists(account_id):
                    logger.info(f"{account_id} existed before watching started")
                    return self._record(EventOutcome.SKIPPED_PRE_EXISTING)
            except LedgerError as e:
                logger.critical(f"Ledger check failed for {account_id}: {e}")
                self._notify_failure(account_id, e)
                return self._record(EventOutcome.FAILED)

            started = time.monotonic()
            try:
                self.action.run(account_id, event)
            except DownstreamActionFailure as e:
                logger.error(f"Command execution error for {account_id}: {e}")
                self._notify_failure(account_id, e)
                return self._record(EventOutcome.FAILED)

            try:
                self.ledger.mark_reacted(account_id)
            except LedgerWriteFailure as e:
                logger.critical(f"Action succeeded for {account_id} but the ledger write failed; "
                                f"it may be repeated after a restart: {e}")
                self._notify_failure(account_id, e)
                return self._record(EventOutcome.FAILED)

        logger.info(f"Reacted to new account {account_id} in {time.monotonic() - started:.2f}s")
        return self._record(EventOutcome.DONE)

    def _notify_failure(self, account_id: str, error: Exception):
        if self.on_failure is None:
            return
        try:
            self.on_failure(account_id, error)
        except Exception as e:
            logger.error(f"Failure notification for {account_id} failed: {e}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting events and wait for scheduled and running pipelines.

        Returns:
            True if everything finished within ``timeout``
        """
        with self._state_lock:
            self._accepting = False

        deadline = None if timeout is None else time.monotonic() + timeout

        def remaining():
            return None if deadline is None else max(0.0, deadline - time.monotonic())

        while True:
            with self._state_lock:
                timers = list(self._timers)
            if not timers:
                break
            for timer in timers:
                timer.join(remaining())
            if deadline is not None and time.monotonic() >= deadline:
                break

        with self._state_lock:
            futures = list(self._futures)
        _, not_done = wait(futures, timeout=remaining())

        with self._state_lock:
            finished = not self._timers and not not_done
        self._executor.shutdown(wait=finished)

        if finished:
            logger.info("All event pipelines finished")
        else:
            logger.warning(f"Shutdown timeout reached with {self.pending} event pipeline(s) unfinished")
        return finished
