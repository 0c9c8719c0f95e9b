"""
HTTP transport for the UAA and Cloud Controller APIs.

This module provides a small JSON-over-HTTPS client with bearer-token and
basic authentication, SSL context handling (including custom truststores),
and mapping of failures onto the transport error types used by the rest of
the package.
"""

import json
import ssl
import base64
import logging
from typing import Dict, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

logger = logging.getLogger(__name__)


class CloudFoundryAPIError(Exception):
    """Base exception for UAA and Cloud Controller API errors."""
    pass


class TransportError(CloudFoundryAPIError):
    """Raised when a request fails at the network level or returns a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(CloudFoundryAPIError):
    """Raised when a response body cannot be parsed into the expected shape."""
    pass


class CloudFoundryHTTPClient:
    """
    Blocking HTTP client shared by the UAA and organization managers.

    One connection is kept per scheme and host. Callers pass absolute URLs
    and the bearer token to use for each request; the client itself holds no
    credentials.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize HTTP client.

        Args:
            config: Cloud Foundry configuration dictionary (verify_ssl,
                truststore_file, truststore_type, truststore_password, timeout)
        """
        self.config = config or {}
        self.verify_ssl = self.config.get('verify_ssl', True)
        self.timeout = self.config.get('timeout', 30)

        self.connections = {}
        self.ssl_context = None
        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning("SSL verification disabled for Cloud Foundry endpoints")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise CloudFoundryAPIError(f"Unsupported truststore type: {truststore_type}")

        except CloudFoundryAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise CloudFoundryAPIError(f"Truststore loading failed: {e}")

    def _get_connection(self, scheme: str, host: str) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create the connection for a scheme and host."""
        key = (scheme, host)
        if key in self.connections:
            return self.connections[key]

        if scheme == 'https':
            connection = HTTPSConnection(host, context=self.ssl_context, timeout=self.timeout)
        else:
            connection = HTTPConnection(host, timeout=self.timeout)

        self.connections[key] = connection
        return connection

    def _drop_connection(self, key: Tuple[str, str]):
        connection = self.connections.pop(key, None)
        if connection:
            try:
                connection.close()
            except OSError as e:
                logger.debug(f"Error closing connection to {key[1]}: {e}")

    def get(self, url: str, token: str) -> Any:
        """GET a URL with bearer-token auth and return the decoded JSON body."""
        return self.request('GET', url, token=token)

    def post(self, url: str, token: str, body: Any) -> Any:
        """POST a JSON body with bearer-token auth."""
        return self.request('POST', url, token=token, body=body)

    def put(self, url: str, token: str, body: Any) -> Any:
        """PUT a JSON body with bearer-token auth."""
        return self.request('PUT', url, token=token, body=body)

    def post_form(self, url: str, fields: Dict[str, str], username: str, password: str) -> Any:
        """
        POST a form-encoded body with basic auth.

        Used for OAuth token requests against the UAA.
        """
        credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
        headers = {
            'Authorization': f"Basic {credentials}",
            'Content-Type': 'application/x-www-form-urlencoded',
        }
        return self.request('POST', url, raw_body=urlencode(fields), headers=headers)

    def request(self, method: str, url: str, token: Optional[str] = None, body: Any = None,
                raw_body: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> Any:
        """
        Make HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT)
            url: Absolute URL
            token: Bearer token, if any
            body: Object to serialize as JSON (dicts or objects with to_dict())
            raw_body: Pre-encoded body, sent as is
            headers: Additional headers

        Returns:
            Parsed JSON response ({} for an empty body)

        Raises:
            TransportError: On connection or protocol failure, or a non-2xx status
            DecodeError: If the response body is not UTF-8 encoded JSON
        """
        parsed = urlparse(url)
        path = parsed.path or '/'
        if parsed.query:
            path = f"{path}?{parsed.query}"

        request_headers = {'Accept': 'application/json'}
        if token:
            request_headers['Authorization'] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)

        request_body = raw_body
        if body is not None:
            payload = body.to_dict() if hasattr(body, 'to_dict') else body
            request_body = json.dumps(payload)
            request_headers['Content-Type'] = 'application/json'

        key = (parsed.scheme, parsed.netloc)
        try:
            conn = self._get_connection(*key)

            logger.debug(f"Making {method} request to {parsed.netloc}{path}")
            conn.request(method, path, request_body, request_headers)

            response = conn.getresponse()
            raw_data = response.read()
        except (ConnectionError, OSError, HTTPException) as e:
            self._drop_connection(key)
            raise TransportError(f"Connection error for {method} {url}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if not 200 <= response.status < 300:
            raise TransportError(
                f"HTTP {response.status} {response.reason} for {method} {url}: "
                f"{raw_data[:200].decode('utf-8', 'replace')}",
                status_code=response.status
            )

        try:
            response_data = raw_data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"Response for {method} {url} is not valid UTF-8: {e}")

        if not response_data:
            return {}
        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Invalid JSON response for {method} {url}: {e}")

    def close(self):
        """Close all open connections."""
        for key in list(self.connections):
            self._drop_connection(key)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
