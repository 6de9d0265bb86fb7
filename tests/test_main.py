#!/usr/bin/env python3
"""
Unit tests for the watcher service wiring.

Directory, action and subscriber are mocked; the ledger is real and lives
in a temporary directory.
"""

import os
import sys
import shutil
import tempfile
import unittest
import yaml
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_watch.config import load_config
from ldap_watch.ldap_client import DirectoryUnavailable, DirectoryQueryError
from ldap_watch.ledger import Ledger
from ldap_watch.main import (
    WatchService, EXIT_OK, EXIT_CONFIGURATION, EXIT_DIRECTORY
)


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ledger_path = os.path.join(self.temp_dir, 'data', 'ledger.db')
        config_path = os.path.join(self.temp_dir, 'config.yaml')
        with open(config_path, 'w') as f:
            yaml.safe_dump({
                'ldap': {
                    'server_url': 'ldap://dc01.example.com',
                    'bind_dn': 'CN=svc-watch,DC=example,DC=com',
                    'bind_password': 'secret'
                },
                'watch': {'settle_delay_seconds': 0, 'liveness_check_seconds': 1},
                'ledger': {'path': self.ledger_path},
                'logging': {'log_dir': os.path.join(self.temp_dir, 'logs'), 'console_output': False},
                'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
                'action': {'module': 'command', 'command': ['/bin/true', '{account}']}
            }, f)
        self.config_path = config_path
        self.config = load_config(config_path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestWatchServiceRun(ServiceTestCase):
    """Test cases for WatchService.run exit codes."""

    def test_missing_configuration(self):
        service = WatchService(config_path=os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(service.run(), EXIT_CONFIGURATION)

    @patch('ldap_watch.main.setup_logging')
    @patch('ldap_watch.main.send_subscription_failure')
    @patch('ldap_watch.main.DirectoryClient')
    def test_directory_unreachable(self, mock_client_class, mock_notify, mock_logging):
        mock_client_class.return_value.connect.side_effect = DirectoryUnavailable("unreachable")

        service = WatchService(config=self.config)

        self.assertEqual(service.run(), EXIT_DIRECTORY)
        mock_notify.assert_called_once()
        mock_client_class.return_value.disconnect.assert_called_once_with()

    @patch('ldap_watch.main.setup_logging')
    @patch('ldap_watch.main.load_action')
    def test_unknown_action_is_configuration_error(self, mock_load_action, mock_logging):
        from ldap_watch.actions.base import ActionLoadError
        mock_load_action.side_effect = ActionLoadError("no such module")

        with patch('ldap_watch.main.DirectoryClient') as mock_client_class:
            mock_client_class.return_value.iter_user_accounts.return_value = iter([])
            service = WatchService(config=self.config)
            self.assertEqual(service.run(), EXIT_CONFIGURATION)

    @patch('ldap_watch.main.setup_logging')
    @patch('ldap_watch.main.ChangeFeedSubscriber')
    @patch('ldap_watch.main.load_action')
    @patch('ldap_watch.main.DirectoryClient')
    def test_clean_run_and_stop(self, mock_client_class, mock_load_action,
                                mock_subscriber_class, mock_logging):
        directory = mock_client_class.return_value
        directory.iter_user_accounts.return_value = iter(['alice', 'bob'])
        directory.get_base_dn.return_value = 'DC=example,DC=com'
        subscriber = mock_subscriber_class.return_value

        service = WatchService(config=self.config)
        service.stop()
        with patch.object(WatchService, '_install_signal_handlers'):
            self.assertEqual(service.run(), EXIT_OK)

        subscriber.subscribe.assert_called_once_with('DC=example,DC=com', '(objectClass=*)', 'subtree')
        subscriber.release_all.assert_called_once_with()
        mock_load_action.return_value.close.assert_called_once_with()
        directory.disconnect.assert_called_once_with()

        with Ledger(self.ledger_path) as ledger:
            self.assertEqual(ledger.count(), 2)
            self.assertFalse(ledger.has_reacted('alice'))


class TestWatchServiceLedger(ServiceTestCase):
    """Test cases for first-run seeding."""

    def _service(self, accounts):
        service = WatchService(config=self.config)
        service.directory = Mock()
        service.directory.iter_user_accounts.side_effect = lambda: iter(accounts)
        return service

    def test_first_run_seeds_existing_accounts(self):
        service = self._service(['alice', 'bob'])
        service._open_ledger()

        self.assertTrue(service.ledger.exists('alice'))
        self.assertFalse(service.ledger.has_reacted('bob'))
        service.ledger.close()

    def test_later_runs_do_not_seed(self):
        first = self._service(['alice'])
        first._open_ledger()
        first.ledger.close()

        second = self._service(['alice', 'carol'])
        second._open_ledger()

        second.directory.iter_user_accounts.assert_not_called()
        self.assertFalse(second.ledger.exists('carol'))
        second.ledger.close()

    def test_failed_seed_removes_ledger(self):
        service = WatchService(config=self.config)
        service.directory = Mock()
        service.directory.iter_user_accounts.side_effect = DirectoryQueryError("enumeration failed")

        with self.assertRaises(DirectoryQueryError):
            service._open_ledger()

        self.assertIsNone(service.ledger)
        self.assertFalse(os.path.exists(self.ledger_path))

    @patch('ldap_watch.main.DirectoryClient')
    def test_seed_command(self, mock_client_class):
        mock_client_class.return_value.iter_user_accounts.return_value = iter(['alice', 'bob'])

        stats = WatchService(config=self.config).seed()

        self.assertEqual(stats['inserted'], 2)
        mock_client_class.return_value.disconnect.assert_called_once_with()


class TestSubscriptionWatchdog(ServiceTestCase):
    """Test cases for check_subscription."""

    def setUp(self):
        super().setUp()
        self.service = WatchService(config=self.config)
        self.service.directory = Mock()
        self.service.directory.get_base_dn.return_value = 'DC=example,DC=com'
        self.service.subscriber = Mock()
        self.old_handle = Mock(end_reason='server ended search: timeLimitExceeded')
        self.service.handle = self.old_handle

    def test_live_subscription_is_left_alone(self):
        self.service.subscriber.needs_renewal.return_value = False

        self.assertTrue(self.service.check_subscription())
        self.service.subscriber.subscribe.assert_not_called()

    def test_ended_subscription_is_renewed(self):
        self.service.subscriber.needs_renewal.return_value = True
        new_handle = Mock()
        self.service.subscriber.subscribe.return_value = new_handle

        self.assertTrue(self.service.check_subscription())

        self.service.subscriber.release.assert_called_once_with(self.old_handle)
        self.assertIs(self.service.handle, new_handle)

    def test_transient_failure_is_retried(self):
        self.service.subscriber.needs_renewal.return_value = True
        new_handle = Mock()
        self.service.subscriber.subscribe.side_effect = [DirectoryUnavailable("busy"), new_handle]

        self.assertTrue(self.service.check_subscription())
        self.assertEqual(self.service.subscriber.subscribe.call_count, 2)

    @patch('ldap_watch.main.send_subscription_failure')
    def test_persistent_failure_notifies(self, mock_notify):
        self.service.subscriber.needs_renewal.return_value = True
        self.service.subscriber.subscribe.side_effect = DirectoryUnavailable("down")

        self.assertFalse(self.service.check_subscription())

        self.assertEqual(self.service.subscriber.subscribe.call_count, 3)
        self.assertIsNone(self.service.handle)
        mock_notify.assert_called_once()
        self.assertEqual(mock_notify.call_args[0][2], 3)

    def test_shutdown_releases_before_draining(self):
        parent = Mock()
        self.service.subscriber = parent.subscriber
        self.service.engine = parent.engine
        self.service.engine.stats = {}
        self.service.action = parent.action
        self.service.directory = parent.directory
        self.service.ledger = parent.ledger

        self.service._shutdown()

        names = [c[0] for c in parent.mock_calls]
        self.assertLess(names.index('subscriber.release_all'), names.index('engine.drain'))
        self.assertLess(names.index('engine.drain'), names.index('ledger.close'))
        parent.engine.drain.assert_called_once_with(60)


class TestHealthCheck(ServiceTestCase):
    """Test cases for health_check."""

    @patch('ldap_watch.main.load_action')
    @patch('ldap_watch.main.DirectoryClient')
    def test_healthy_before_first_run(self, mock_client_class, mock_load_action):
        mock_client_class.return_value.test_connection.return_value = True

        health = WatchService(config=self.config).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['ledger']['status'], 'skip')
        self.assertEqual(health['checks']['directory']['status'], 'pass')

    @patch('ldap_watch.main.load_action')
    @patch('ldap_watch.main.DirectoryClient')
    def test_directory_failure_is_unhealthy(self, mock_client_class, mock_load_action):
        mock_client_class.return_value.test_connection.return_value = False
        with Ledger(self.ledger_path) as ledger:
            ledger.mark_reacted('jdoe')

        health = WatchService(config=self.config).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['directory']['status'], 'fail')
        self.assertIn('1 reacted', health['checks']['ledger']['message'])

    def test_bad_configuration(self):
        health = WatchService(config_path=os.path.join(self.temp_dir, 'missing.yaml')).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')


if __name__ == '__main__':
    unittest.main()
