"""
Base HTTP client and error kinds for the target directory.

This module holds the JSON-over-HTTPS plumbing shared by target adapters
(SSL context, bearer authentication, request/response handling) and the error
hierarchy the orchestrator uses to decide whether a failure is recoverable.
"""

import json
import ssl
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

from ldap_scim_sync.retry import RetryableError, retry_from_config

logger = logging.getLogger(__name__)

SCIM_CONTENT_TYPE = 'application/scim+json'

STATUS_MESSAGES = {
    400: "Bad request - check the request payload",
    401: "Authentication failed - the access token is invalid or expired",
    403: "Access denied - insufficient permissions for provisioning",
    404: "Endpoint or resource not found",
    409: "Resource conflict - the resource already exists",
    429: "Rate limit exceeded",
    500: "Internal server error",
    502: "Service temporarily unavailable",
    503: "Service temporarily unavailable",
    504: "Gateway timeout",
}


class TargetAPIError(Exception):
    """Base exception for target directory errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 operation: Optional[str] = None):
        self.status_code = status_code
        self.operation = operation
        super().__init__(message)


class TargetAuthenticationError(TargetAPIError):
    """Raised on 401/403 responses."""
    pass


class NotFoundError(TargetAPIError):
    """A lookup matched nothing, or the resource does not exist."""
    pass


class AmbiguousError(TargetAPIError):
    """A lookup that must be unique matched more than one entity."""
    pass


class ConflictError(TargetAPIError):
    """The target reported that the resource already exists."""
    pass


class TransientError(TargetAPIError, RetryableError):
    """Timeouts, throttling and 5xx responses; retried at the transport boundary."""
    pass


class ProtocolError(TargetAPIError):
    """Any other client error; carries the original status code."""
    pass


def error_for_status(status_code: int, operation: str, detail: str = '') -> TargetAPIError:
    """
    Translate an HTTP status code into the matching error kind.

    Args:
        status_code: HTTP status returned by the target
        operation: Name of the operation that failed
        detail: Response detail, if any

    Returns:
        Exception instance (not raised)
    """
    message = STATUS_MESSAGES.get(status_code, f"Unexpected HTTP status {status_code}")
    text = f"{operation} failed with HTTP {status_code}: {message}"
    if detail:
        text += f" ({detail})"

    if status_code in (401, 403):
        return TargetAuthenticationError(text, status_code, operation)
    if status_code == 404:
        return NotFoundError(text, status_code, operation)
    if status_code == 409:
        return ConflictError(text, status_code, operation)
    if status_code == 429 or status_code >= 500:
        return TransientError(text, status_code, operation)
    return ProtocolError(text, status_code, operation)


class TargetAPIBase:
    """
    JSON HTTP client for a target directory endpoint.

    Handles SSL configuration, bearer token authentication and translation of
    HTTP failures into the error kinds above. Transient failures are retried
    according to the ``error_handling`` configuration.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize target API client.

        Args:
            config: Endpoint configuration (``endpoint``, ``access_token``,
                ``verify_ssl``, ``ca_bundle``, ``ca_bundle_type``,
                ``ca_bundle_password``, ``timeout``)
            error_handling: Retry configuration
        """
        self.config = config
        self.name = config.get('name', 'scim')
        self.base_url = config['endpoint']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None

        self.auth_headers = {}
        token = config.get('access_token')
        if token:
            self.auth_headers['Authorization'] = f"Bearer {token}"
        else:
            logger.error(f"No access token configured for {self.name}")

        self._run_with_retry = retry_from_config(error_handling or {}, f"{self.name} request")

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_bundle = self.config.get('ca_bundle')
        if ca_bundle:
            self._load_ca_bundle(ca_bundle)

    def _load_ca_bundle(self, ca_bundle: str):
        """Load a custom CA bundle in PEM or PKCS12 form."""
        bundle_type = self.config.get('ca_bundle_type', 'PEM').upper()
        bundle_password = self.config.get('ca_bundle_password')

        try:
            if bundle_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=ca_bundle)
                logger.info(f"Loaded PEM CA bundle: {ca_bundle}")

            elif bundle_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(ca_bundle, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, bundle_password.encode() if bundle_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 CA bundle: {ca_bundle}")

            else:
                raise TargetAPIError(f"Unsupported CA bundle type: {bundle_type}")

        except TargetAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load CA bundle {ca_bundle}: {e}")
            raise TargetAPIError(f"CA bundle loading failed: {e}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params)
        return full_path

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None,
                operation: Optional[str] = None) -> Dict[str, Any]:
        """
        Make an HTTP request, retrying transient failures.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: Endpoint path relative to the base URL
            body: JSON request body
            params: Query string parameters
            operation: Operation name used in error messages

        Returns:
            Parsed JSON response, or an empty dict for empty bodies

        Raises:
            TargetAPIError: A subclass matching the failure kind
            MaxRetriesExceeded: If a transient failure outlasts the retry policy
        """
        operation = operation or f"{method} {path}"
        return self._run_with_retry(lambda: self._send(method, path, body, params, operation))

    def _send(self, method: str, path: str, body: Optional[Dict],
              params: Optional[Dict[str, Any]], operation: str) -> Dict[str, Any]:
        full_path = self._build_path(path, params)

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = SCIM_CONTENT_TYPE

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = SCIM_CONTENT_TYPE

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, TimeoutError, OSError) as e:
            # Drop the connection so the next attempt reconnects
            self.close_connection()
            raise TransientError(f"{operation} connection error to {self.name}: {e}", operation=operation)

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status >= 400:
            raise error_for_status(response.status, operation, self._error_detail(response_data))

        if not response_data:
            return {}

        try:
            return json.loads(response_data)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"{operation}: invalid JSON response from {self.name}: {e}",
                                response.status, operation)

    def _error_detail(self, response_data: str) -> str:
        """Extract the SCIM error ``detail`` field if the body carries one."""
        if not response_data:
            return ''
        try:
            payload = json.loads(response_data)
        except json.JSONDecodeError:
            return response_data[:200]
        if isinstance(payload, dict):
            return str(payload.get('detail', ''))
        return ''

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
