#!/usr/bin/env python3
"""
Unit tests for logging setup and sensitive data filtering.
"""

import os
import sys
import time
import shutil
import logging
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_watch.logging_setup import LoggingManager, SensitiveDataFilter, LOG_FILE_NAME


def filtered(msg, *args):
    record = logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)
    SensitiveDataFilter().filter(record)
    return record.getMessage()


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def test_masks_assignments(self):
        message = filtered("Binding with bind_password=hunter2, user=svc")
        self.assertNotIn('hunter2', message)
        self.assertIn('user=svc', message)

    def test_masks_json_values(self):
        message = filtered('payload {"token": "abc123", "account": "newhire"}')
        self.assertNotIn('abc123', message)
        self.assertIn('"account": "newhire"', message)

    def test_masks_authorization_header(self):
        message = filtered("Sending headers Authorization: Bearer eyJhbGciOi")
        self.assertNotIn('eyJhbGciOi', message)

    def test_masks_formatted_arguments(self):
        message = filtered("smtp_password: %s", 'mailpass')
        self.assertNotIn('mailpass', message)

    def test_plain_messages_untouched(self):
        self.assertEqual(filtered("Changed: CN=newhire,OU=Staff,DC=example,DC=com"),
                         "Changed: CN=newhire,OU=Staff,DC=example,DC=com")


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log_dir = os.path.join(self.temp_dir, 'logs')
        self.manager = LoggingManager()

    def tearDown(self):
        self.manager.reset()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_creates_log_file(self):
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': False})
        logging.getLogger('ldap_watch.test').info("hello")

        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        self.assertTrue(os.path.exists(log_file))
        self.assertIn(log_file, self.manager.get_log_files())

    def test_setup_is_idempotent(self):
        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': True})
        handlers = list(logging.getLogger().handlers)

        self.manager.setup_logging({'log_dir': self.log_dir, 'console_output': True})

        self.assertEqual(logging.getLogger().handlers, handlers)
        self.assertEqual(len(handlers), 2)

    def test_old_rotated_logs_are_removed(self):
        os.makedirs(self.log_dir)
        old_log = os.path.join(self.log_dir, LOG_FILE_NAME + '.2020-01-01')
        recent_log = os.path.join(self.log_dir, LOG_FILE_NAME + '.recent')
        for path in (old_log, recent_log):
            with open(path, 'w') as f:
                f.write('x\n')
        old_time = time.time() - 30 * 24 * 3600
        os.utime(old_log, (old_time, old_time))

        self.manager.setup_logging({'log_dir': self.log_dir, 'retention_days': 7,
                                    'console_output': False})

        self.assertFalse(os.path.exists(old_log))
        self.assertTrue(os.path.exists(recent_log))


if __name__ == '__main__':
    unittest.main()
