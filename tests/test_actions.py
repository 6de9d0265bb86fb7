#!/usr/bin/env python3
"""
Unit tests for downstream actions and dynamic action loading.
"""

import os
import sys
import json
import glob
import base64
import tempfile
import subprocess
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_watch.actions import (
    ReactionActionBase, DownstreamActionFailure, ActionLoadError, load_action
)
from ldap_watch.actions.command import CommandAction
from ldap_watch.actions.webhook import WebhookAction
from ldap_watch.events import ChangeEvent


EVENT = ChangeEvent.from_ldap_response({
    'dn': 'CN=newhire,OU=Staff,DC=example,DC=com',
    'attributes': {'objectClass': ['user'], 'sAMAccountName': 'newhire'}
})


class TestLoadAction(unittest.TestCase):
    """Test cases for load_action."""

    def test_load_command_action(self):
        action = load_action({'module': 'command', 'command': ['/bin/true']})
        self.assertIsInstance(action, CommandAction)

    def test_load_webhook_action(self):
        action = load_action({'module': 'webhook', 'url': 'https://hooks.example.com/new'})
        self.assertIsInstance(action, WebhookAction)

    def test_missing_module(self):
        with self.assertRaises(ActionLoadError) as cm:
            load_action({'module': 'nonexistent'})
        self.assertIn('nonexistent', str(cm.exception))

    def test_module_without_action_class(self):
        with self.assertRaises(ActionLoadError):
            load_action({'module': 'base'})

    def test_initialization_failure(self):
        with self.assertRaises(ActionLoadError):
            load_action({'module': 'webhook', 'url': 'ftp://files.example.com/'})


class TestReactionActionBase(unittest.TestCase):
    """Test cases for the run() wrapper."""

    class Flaky(ReactionActionBase):
        def __init__(self, result):
            super().__init__({'module': 'flaky'})
            self.result = result

        def invoke(self, account_id, event=None):
            if isinstance(self.result, Exception):
                raise self.result
            return self.result

    def test_success(self):
        self.Flaky(True).run('newhire')

    def test_false_return_is_failure(self):
        with self.assertRaises(DownstreamActionFailure) as cm:
            self.Flaky(False).run('newhire')
        self.assertEqual(cm.exception.account_id, 'newhire')

    def test_exception_is_wrapped(self):
        with self.assertRaises(DownstreamActionFailure) as cm:
            self.Flaky(OSError("permission denied")).run('newhire')
        self.assertIn('permission denied', str(cm.exception))
        self.assertIsInstance(cm.exception.__cause__, OSError)


class TestCommandAction(unittest.TestCase):
    """Test cases for CommandAction."""

    def test_string_command_is_split(self):
        action = CommandAction({'module': 'command', 'command': '/usr/local/bin/mkhome --user {account}'})
        self.assertEqual(action.command, ['/usr/local/bin/mkhome', '--user', '{account}'])

    def test_placeholders(self):
        action = CommandAction({'module': 'command', 'command': ['provision', '{account}', '--dn={dn}']})
        self.assertEqual(
            action.build_arguments('newhire', EVENT),
            ['provision', 'newhire', '--dn=CN=newhire,OU=Staff,DC=example,DC=com']
        )

    def test_empty_command_rejected(self):
        with self.assertRaises(ValueError):
            CommandAction({'module': 'command', 'command': []})

    @patch('ldap_watch.actions.command.subprocess.run')
    def test_invoke_success(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout='created\n', stderr='')
        action = CommandAction({'module': 'command', 'command': ['provision', '{account}'], 'timeout': 60})

        self.assertTrue(action.invoke('newhire', EVENT))

        args, kwargs = mock_run.call_args
        self.assertEqual(args[0], ['provision', 'newhire'])
        self.assertEqual(kwargs['timeout'], 60)

    @patch('ldap_watch.actions.command.subprocess.run')
    def test_invoke_nonzero_exit(self, mock_run):
        mock_run.return_value = Mock(returncode=3, stdout='', stderr='quota exceeded')
        action = CommandAction({'module': 'command', 'command': ['provision', '{account}']})

        self.assertFalse(action.invoke('newhire'))
        with self.assertRaises(DownstreamActionFailure):
            action.run('newhire')

    @patch('ldap_watch.actions.command.subprocess.run')
    def test_timeout_is_failure(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd='provision', timeout=1)
        action = CommandAction({'module': 'command', 'command': ['provision'], 'timeout': 1})

        with self.assertRaises(DownstreamActionFailure):
            action.run('newhire')


class TestWebhookAction(unittest.TestCase):
    """Test cases for WebhookAction."""

    def _action(self, **overrides):
        config = {'module': 'webhook', 'url': 'http://hooks.example.com/new-user?source=ad'}
        config.update(overrides)
        return WebhookAction(config)

    def test_basic_auth_header(self):
        action = self._action(auth={'method': 'basic', 'username': 'svc', 'password': 'pw'})
        expected = base64.b64encode(b'svc:pw').decode()
        self.assertEqual(action.auth_headers['Authorization'], f'Basic {expected}')

    def test_bearer_auth_header(self):
        action = self._action(auth={'method': 'bearer', 'token': 'abc123'})
        self.assertEqual(action.auth_headers['Authorization'], 'Bearer abc123')

    def test_incomplete_or_unknown_auth(self):
        with self.assertRaises(ValueError):
            self._action(auth={'method': 'basic', 'username': 'svc'})
        with self.assertRaises(ValueError):
            self._action(auth={'method': 'kerberos'})

    def test_https_gets_ssl_context(self):
        action = self._action(url='https://hooks.example.com/new')
        self.assertIsNotNone(action.ssl_context)
        self.assertIsNone(self._action().ssl_context)

    def _write_pkcs12(self, directory, password):
        from cryptography import x509
        from cryptography.x509.oid import NameOID
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import rsa
        from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12

        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, 'ldap-watch')])
        now = datetime.now(timezone.utc)
        certificate = (x509.CertificateBuilder()
                       .subject_name(name)
                       .issuer_name(name)
                       .public_key(key.public_key())
                       .serial_number(x509.random_serial_number())
                       .not_valid_before(now)
                       .not_valid_after(now + timedelta(days=1))
                       .sign(key, hashes.SHA256()))
        path = os.path.join(directory, 'client.p12')
        with open(path, 'wb') as f:
            f.write(pkcs12.serialize_key_and_certificates(
                b'client', key, certificate, None, BestAvailableEncryption(password.encode())
            ))
        return path

    def test_pkcs12_keystore_leaves_no_pem_files(self):
        with tempfile.TemporaryDirectory() as directory:
            keystore = self._write_pkcs12(directory, 'changeit')

            with patch.object(tempfile, 'tempdir', directory):
                action = self._action(url='https://hooks.example.com/new', keystore_file=keystore,
                                      keystore_type='PKCS12', keystore_password='changeit')

            self.assertIsNotNone(action.ssl_context)
            self.assertEqual(glob.glob(os.path.join(directory, '*.pem')), [])

    @patch('ldap_watch.actions.webhook.HTTPConnection')
    def test_invoke_posts_payload(self, mock_conn_class):
        conn = mock_conn_class.return_value
        conn.getresponse.return_value = Mock(status=204, reason='No Content')
        action = self._action(headers={'X-Source': 'ldap-watch'})

        self.assertTrue(action.invoke('newhire', EVENT))

        method, path, body, headers = conn.request.call_args[0]
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/new-user?source=ad')
        payload = json.loads(body)
        self.assertEqual(payload['account'], 'newhire')
        self.assertEqual(payload['dn'], 'CN=newhire,OU=Staff,DC=example,DC=com')
        self.assertIn('detected_at', payload)
        self.assertEqual(headers['X-Source'], 'ldap-watch')
        conn.close.assert_called_once_with()

    @patch('ldap_watch.actions.webhook.HTTPConnection')
    def test_error_status_is_failure(self, mock_conn_class):
        conn = mock_conn_class.return_value
        conn.getresponse.return_value = Mock(status=500, reason='Internal Server Error')

        self.assertFalse(self._action().invoke('newhire'))

    @patch('ldap_watch.actions.webhook.HTTPConnection')
    def test_connection_error_is_wrapped_by_run(self, mock_conn_class):
        mock_conn_class.return_value.request.side_effect = ConnectionRefusedError()

        with self.assertRaises(DownstreamActionFailure):
            self._action().run('newhire')
        mock_conn_class.return_value.close.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
