"""
Service entry point for LDAP User Watch.

Wires configuration, logging, the ledger, the directory client, the change
subscription and the reaction engine together, then keeps the subscription
alive until the process is asked to stop.
"""

import os
import sys
import signal
import logging
import threading
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_watch.actions.base import ActionLoadError, load_action
from ldap_watch.config import load_config, ConfigurationError
from ldap_watch.engine import ReactionEngine
from ldap_watch.ldap_client import DirectoryClient, DirectoryError
from ldap_watch.ledger import Ledger, LedgerError
from ldap_watch.logging_setup import setup_logging
from ldap_watch.notifications import send_account_failure, send_subscription_failure
from ldap_watch.retry import retry_call, create_retry_callback, MaxRetriesExceeded
from ldap_watch.seed import seed_ledger
from ldap_watch.subscriber import ChangeFeedSubscriber
from ldap_watch.verifier import ExistenceVerifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIGURATION = 2
EXIT_DIRECTORY = 3
EXIT_UNEXPECTED = 4


class WatchService:
    """
    Long-running watcher process.

    ``run`` blocks until ``stop`` is called (SIGINT/SIGTERM), checking every
    ``liveness_check_seconds`` that the change subscription is still alive
    and re-subscribing when it has ended or expired.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.config = config
        self.directory = None
        self.ledger = None
        self.action = None
        self.engine = None
        self.subscriber = None
        self.handle = None
        self.started_at = None
        self._stop_event = threading.Event()

    def run(self) -> int:
        """
        Run the watcher until stopped.

        Returns:
            Exit code (0 for a clean stop, non-zero for a startup failure)
        """
        try:
            if self.config is None:
                self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Startup")
            self.started_at = datetime.now()

            self._connect_directory()
            self._open_ledger()
            self._build_engine()
            self._start_subscription()
            self._install_signal_handlers()

            self._watch_loop()
            return EXIT_OK

        except (ConfigurationError, ActionLoadError) as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except DirectoryError as e:
            logger.error(f"Directory error: {e}")
            self._notify_subscription_failure(str(e), attempts=1)
            return EXIT_DIRECTORY
        except LedgerError as e:
            logger.critical(f"Ledger error: {e}")
            return EXIT_UNEXPECTED
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._shutdown()
            logger.info("Shutdown")

    def stop(self):
        """Ask the watch loop to exit."""
        self._stop_event.set()

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_directory(self):
        logger.info("Connecting to the directory")
        self.directory = DirectoryClient(self.config['ldap'])
        self.directory.connect()

    def _open_ledger(self, force_seed: bool = False):
        """Open the ledger, seeding it from the directory on first run."""
        path = self.config['ledger']['path']
        first_run = not Ledger.is_initialized(path)
        self.ledger = Ledger(path)

        if first_run or force_seed:
            try:
                seed_ledger(self.ledger, self.directory.iter_user_accounts())
            except Exception:
                if first_run:
                    # a half-seeded ledger would make existing accounts look new
                    self.ledger.close()
                    self.ledger = None
                    os.remove(path)
                raise

    def _build_engine(self):
        watch_config = self.config['watch']
        self.action = load_action(self.config['action'])
        self.engine = ReactionEngine(
            ExistenceVerifier(self.directory),
            self.ledger,
            self.action,
            settle_delay=watch_config['settle_delay_seconds'],
            max_workers=watch_config['max_workers'],
            user_object_class=watch_config['user_object_class'],
            account_attribute=self.config['ldap']['account_attribute'],
            on_failure=self._on_account_failure
        )
        self.subscriber = ChangeFeedSubscriber(
            self.directory,
            self.engine.submit,
            time_to_live=watch_config['subscription_ttl_seconds']
        )

    def _subscribe_once(self):
        ldap_config = self.config['ldap']
        self.handle = self.subscriber.subscribe(
            self.directory.get_base_dn(),
            ldap_config['watch_filter'],
            ldap_config['watch_scope']
        )
        return self.handle

    def _start_subscription(self):
        logger.info("Registering change notification with the directory")
        self._subscribe_once()
        logger.info("Change notification registered; watching for new accounts")

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda received, frame: self.stop())

    def _watch_loop(self):
        interval = self.config['watch']['liveness_check_seconds']
        while not self._stop_event.wait(interval):
            self.check_subscription()

    def check_subscription(self) -> bool:
        """
        Renew the subscription if it ended, expired, or lost its connection.

        Returns:
            True if a live subscription is in place afterwards
        """
        if self.handle is not None and not self.subscriber.needs_renewal(self.handle):
            return True

        if self.handle is not None:
            logger.warning(f"Subscription needs renewal ({self.handle.end_reason or 'expired'}); re-subscribing")
            self.subscriber.release(self.handle)
            self.handle = None

        error_config = self.config['error_handling']
        attempts = error_config['max_retries'] + 1
        try:
            retry_call(
                self._subscribe_once,
                max_attempts=attempts,
                delay=error_config['retry_wait_seconds'],
                backoff=error_config['retry_backoff'],
                exceptions=(DirectoryError,),
                on_retry=create_retry_callback("Re-subscription")
            )
        except MaxRetriesExceeded as e:
            logger.error(f"Could not re-establish change subscription: {e}")
            self._notify_subscription_failure(str(e), attempts=attempts)
            return False

        logger.info("Change subscription renewed")
        return True

    def _on_account_failure(self, account_id: str, error: Exception):
        send_account_failure(account_id, error, self.config.get('notifications', {}))

    def _notify_subscription_failure(self, message: str, attempts: int):
        if not self.config:
            return
        try:
            send_subscription_failure(message, self.config.get('notifications', {}), attempts)
        except Exception as e:
            logger.error(f"Failed to send subscription failure notification: {e}")

    def _shutdown(self):
        """Release the subscription first, then let in-flight pipelines finish."""
        if self.subscriber is not None:
            self.subscriber.release_all()
            self.handle = None

        if self.engine is not None:
            timeout = self.config['watch']['shutdown_timeout_seconds']
            self.engine.drain(timeout)
            logger.info(f"Event statistics: {self.engine.stats}")

        if self.action is not None:
            self.action.close()
        if self.directory is not None:
            self.directory.disconnect()
        if self.ledger is not None:
            self.ledger.close()

    def seed(self) -> Dict[str, int]:
        """Run a seed pass against an existing or new ledger and return its counts."""
        if self.config is None:
            self._load_configuration()
        self._connect_directory()
        try:
            with Ledger(self.config['ledger']['path']) as ledger:
                return seed_ledger(ledger, self.directory.iter_user_accounts())
        finally:
            self.directory.disconnect()

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, ledger, directory and action.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }
        checks = health_status['checks']

        def fail(name: str, message: str):
            checks[name] = {'status': 'fail', 'message': message}
            health_status['status'] = 'unhealthy'

        try:
            if self.config is None:
                self._load_configuration()
            checks['configuration'] = {'status': 'pass', 'message': 'Configuration loaded successfully'}
        except ConfigurationError as e:
            fail('configuration', f'Configuration error: {e}')
            return health_status

        path = self.config['ledger']['path']
        if Ledger.is_initialized(path):
            try:
                with Ledger(path) as ledger:
                    checks['ledger'] = {
                        'status': 'pass',
                        'message': f"{ledger.count()} accounts recorded, {ledger.count(reacted=True)} reacted"
                    }
            except LedgerError as e:
                fail('ledger', f'Ledger error: {e}')
        else:
            checks['ledger'] = {'status': 'skip', 'message': 'Ledger not created yet (first run pending)'}

        client = DirectoryClient(self.config['ldap'])
        if client.test_connection():
            checks['directory'] = {'status': 'pass', 'message': 'Directory connection successful'}
        else:
            fail('directory', 'Directory connection failed')
        client.disconnect()

        try:
            load_action(self.config['action']).close()
            checks['action'] = {'status': 'pass', 'message': 'Action loaded successfully'}
        except ActionLoadError as e:
            fail('action', f'Action loading failed: {e}')

        return health_status


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Watch a directory for new user accounts')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of watching')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--seed', action='store_true',
                        help='Record all existing user accounts in the ledger and exit')

    args = parser.parse_args()

    service = WatchService(config_path=args.config)

    if args.health_check:
        health_status = service.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            service._load_configuration()
            from ldap_watch.notifications import test_notification_config
            if test_notification_config(service.config.get('notifications', {})):
                print("Test email sent successfully")
                sys.exit(0)
            print("Failed to send test email")
            sys.exit(1)
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

    elif args.seed:
        try:
            service._load_configuration()
            setup_logging(service.config.get('logging', {}))
            stats = service.seed()
        except (ConfigurationError, DirectoryError, LedgerError) as e:
            print(f"Seeding failed: {e}")
            sys.exit(1)
        print(json.dumps(stats, indent=2))
        sys.exit(0)

    else:
        sys.exit(service.run())


if __name__ == "__main__":
    main()
