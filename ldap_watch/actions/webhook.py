"""
Webhook action: notify an HTTP endpoint about every new account.

Sends ``{"account": ..., "dn": ..., "detected_at": ...}`` as JSON. Any
response status of 400 or above counts as a failure.

    action:
      module: webhook
      url: https://provisioning.example.com/hooks/new-user
      auth:
        method: bearer
        token: ...
"""

import os
import json
import ssl
import base64
import logging
import tempfile
from datetime import datetime, timezone
from http.client import HTTPSConnection, HTTPConnection
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse

from .base import ReactionActionBase

logger = logging.getLogger(__name__)


class WebhookAction(ReactionActionBase):
    """POSTs a JSON document per confirmed new account."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.url = config['url']
        self.method = config.get('method', 'POST').upper()
        self.timeout = config.get('timeout', 30)
        self.verify_ssl = config.get('verify_ssl', True)
        self.auth_config = config.get('auth') or {}
        self.extra_headers = config.get('headers') or {}

        self.parsed_url = urlparse(self.url)
        if self.parsed_url.scheme not in ('http', 'https'):
            raise ValueError(f"Unsupported webhook URL scheme: {self.url}")

        self.ssl_context = self._create_ssl_context()
        self.auth_headers = self._create_auth_headers()

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.parsed_url.scheme != 'https':
            return None

        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for webhook {self.url}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        if self.config.get('ca_cert_file'):
            context.load_verify_locations(cafile=self.config['ca_cert_file'])

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(context, keystore_file)
        return context

    def _load_client_cert(self, context: ssl.SSLContext, keystore_file: str):
        """Load a PEM or PKCS12 client certificate for mutual TLS."""
        keystore_type = self.config.get('keystore_type', 'PEM').upper()
        keystore_password = self.config.get('keystore_password')

        if keystore_type == 'PEM':
            context.load_cert_chain(keystore_file, password=keystore_password)
        elif keystore_type == 'PKCS12':
            from cryptography.hazmat.primitives import serialization
            from cryptography.hazmat.primitives.serialization import pkcs12

            with open(keystore_file, 'rb') as f:
                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    f.read(), keystore_password.encode() if keystore_password else None
                )
            if not (private_key and certificate):
                raise ValueError(f"PKCS12 keystore {keystore_file} lacks a key or certificate")

            with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as cert_file:
                cert_file.write(certificate.public_bytes(serialization.Encoding.PEM))
            with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as key_file:
                key_file.write(private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption()
                ))
            try:
                context.load_cert_chain(cert_file.name, key_file.name)
            finally:
                os.unlink(cert_file.name)
                os.unlink(key_file.name)
        else:
            raise ValueError(f"Unsupported keystore type: {keystore_type}")

        logger.info(f"Loaded {keystore_type} client certificate: {keystore_file}")

    def _create_auth_headers(self) -> Dict[str, str]:
        auth_method = str(self.auth_config.get('method', '')).lower()
        headers = {}

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if not (username and password):
                raise ValueError("Basic auth requires username and password")
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            headers['Authorization'] = f"Basic {credentials}"
        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if not token:
                raise ValueError("Bearer auth requires a token")
            headers['Authorization'] = f"Bearer {token}"
        elif auth_method:
            raise ValueError(f"Unknown webhook authentication method '{auth_method}'")

        return headers

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.parsed_url.scheme == 'https':
            return HTTPSConnection(self.parsed_url.netloc, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(self.parsed_url.netloc, timeout=self.timeout)

    def build_payload(self, account_id: str, event=None) -> Dict[str, Any]:
        return {
            'account': account_id,
            'dn': event.distinguished_name if event is not None else None,
            'detected_at': datetime.now(timezone.utc).isoformat()
        }

    def invoke(self, account_id: str, event=None) -> bool:
        body = json.dumps(self.build_payload(account_id, event))
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        headers.update(self.extra_headers)
        headers.update(self.auth_headers)

        path = self.parsed_url.path or '/'
        if self.parsed_url.query:
            path = f"{path}?{self.parsed_url.query}"

        conn = self._get_connection()
        try:
            logger.debug(f"Sending {self.method} {self.parsed_url.netloc}{path} for {account_id}")
            conn.request(self.method, path, body, headers)
            response = conn.getresponse()
            response.read()
        finally:
            conn.close()

        if response.status >= 400:
            logger.error(f"Webhook for {account_id} returned HTTP {response.status} {response.reason}")
            return False
        return True

    def describe(self) -> str:
        return f"webhook {self.parsed_url.netloc}"
