"""
Error types raised by the SharePoint client.

Every error carries a ``kind`` so callers can tell "fix my credentials"
(``auth``/``config``), "fix my request" (``request``) and "try again later"
(``transport``) apart without parsing messages.
"""


class SharePointError(Exception):
    """Base exception for SharePoint client errors."""

    kind = 'sharepoint'


class AuthError(SharePointError):
    """Raised when a handshake, digest fetch or session is rejected."""

    kind = 'auth'

    INVALID_CREDENTIALS = 'invalid-credentials'
    ENDPOINT_UNREACHABLE = 'endpoint-unreachable'
    UNEXPECTED_RESPONSE = 'unexpected-response'
    SESSION_REJECTED = 'session-rejected'

    def __init__(self, message, reason, retryable=False, status_code=None):
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable
        self.status_code = status_code


class RequestError(SharePointError):
    """Raised when the service rejects a well-formed request with a 4xx."""

    kind = 'request'

    def __init__(self, message, status_code, server_message=None, url=None):
        super().__init__(message)
        self.status_code = status_code
        self.server_message = server_message
        self.url = url


class TransportError(SharePointError):
    """Raised on network failures, 5xx responses and malformed bodies."""

    kind = 'transport'

    def __init__(self, message, status_code=None, url=None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class ConfigError(SharePointError):
    """Raised when site or credential configuration is malformed."""

    kind = 'config'


def server_message(response):
    """Pull the service's own error text out of an OData error body"""
    try:
        body = response.json()
    except ValueError:
        text = (response.text or '').strip()
        return text[:500] or None

    if not isinstance(body, dict):
        return None
    error = body.get('error') or body.get('odata.error')
    if not isinstance(error, dict):
        return None
    message = error.get('message')
    if isinstance(message, dict):
        return message.get('value')
    return message


def error_from_response(response, url=None):
    """Map a non-2xx, non-auth response to RequestError or TransportError"""
    status = response.status_code
    if 400 <= status < 500:
        message = server_message(response)
        return RequestError(
            f"Request failed with status {status}: {message or response.reason}",
            status,
            server_message=message,
            url=url
        )
    return TransportError(f"Server responded with status {status}", status_code=status, url=url)
