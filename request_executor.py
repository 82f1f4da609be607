"""
Request Executor
================
Turns (url, operation kind, body) into one REST call and classifies the
response.

* 2xx: ``RequestOutcome`` (JSON parsed when the response declares it)
* 401/403: the session and digest are invalidated and the call is re-run
  once with a fresh session; a second rejection raises a non-retryable
  ``AuthError``
* other 4xx: ``RequestError`` carrying the service's message
* 5xx and network failures: ``TransportError``

Only the auth case is retried. Creates are not idempotent, so retrying
request or transport failures is left to the caller.
"""

import logging

import requests

from config import Config
from errors import AuthError, TransportError, error_from_response
from headers import build_headers, serialize_body
from models import OperationKind, RequestOutcome

logger = logging.getLogger(__name__)

AUTH_FAILURES = (401, 403)


class RequestExecutor:
    """Single entry point shared by every client operation"""

    def __init__(self, session_manager, digest_provider, http=None, timeout=Config.REQUEST_TIMEOUT):
        self.session_manager = session_manager
        self.digest_provider = digest_provider
        self.http = http or digest_provider.http or requests.Session()
        self.timeout = timeout

    def resolve(self, kind, timeout=None):
        """Return the (session, digest) pair a call of this kind needs"""
        kind = OperationKind(kind)
        session = self.session_manager.ensure_session(timeout=timeout)
        digest = None
        if kind.requires_digest:
            digest = self.digest_provider.ensure_digest(timeout=timeout)
            # The digest fetch may have re-authenticated
            session = self.session_manager.ensure_session(timeout=timeout)
        return session, digest

    def execute(self, url, kind, body=None, params=None, timeout=None, resolved=None):
        """
        Dispatch one call and return its ``RequestOutcome``.

        ``resolved`` lets composite operations reuse a (session, digest) pair
        across steps; anything in it that expired or is no longer the held
        one is re-resolved first.
        """
        kind = OperationKind(kind)
        try:
            return self._attempt(url, kind, body, params, timeout, resolved)
        except AuthError as e:
            if not (e.retryable and e.reason == AuthError.SESSION_REJECTED):
                raise
            logger.warning(f"Session rejected for {url}, re-authenticating and retrying once")

        if hasattr(body, 'seek'):
            body.seek(0)
        try:
            return self._attempt(url, kind, body, params, timeout, None)
        except AuthError as e:
            if e.reason != AuthError.SESSION_REJECTED:
                raise
            raise AuthError(
                f"Session rejected again after re-authentication: {str(e)}",
                AuthError.SESSION_REJECTED,
                retryable=False,
                status_code=e.status_code
            ) from e

    def _attempt(self, url, kind, body, params, timeout, resolved):
        session, digest = resolved if resolved is not None else self.resolve(kind, timeout)
        session, digest = self._ensure_fresh(kind, session, digest, timeout)

        headers = build_headers(kind, session, digest, body)
        data = serialize_body(body) if kind in (OperationKind.CREATE, OperationKind.UPDATE) else None

        logger.debug(f"{kind.http_method} {url} ({kind.value})")
        try:
            response = self.http.request(
                kind.http_method,
                url,
                headers=headers.to_dict(),
                params=params,
                data=data,
                timeout=timeout if timeout is not None else self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e.__class__.__name__}: {e}", url=url) from e

        if response.status_code in AUTH_FAILURES:
            rejected = self.session_manager.invalidate(session)
            # Only drop what this call used; a late 401 must not discard fresher artifacts
            if digest is not None:
                self.digest_provider.invalidate(digest)
            elif rejected:
                self.digest_provider.invalidate()
            raise AuthError(
                f"Session rejected with status {response.status_code}",
                AuthError.SESSION_REJECTED,
                retryable=True,
                status_code=response.status_code
            )
        if not 200 <= response.status_code < 300:
            error = error_from_response(response, url)
            logger.debug(f"{url} failed: {str(error)}")
            raise error

        return self._outcome(response, url)

    def _ensure_fresh(self, kind, session, digest, timeout):
        # Checked right before dispatch, not only at acquisition. A pair that
        # expired or was invalidated since it was resolved is not reused.
        if not self.session_manager.is_current(session):
            session = self.session_manager.ensure_session(timeout=timeout)
        if kind.requires_digest and not self.digest_provider.is_current(digest):
            logger.info("Form digest expired or replaced before dispatch, refreshing")
            digest = self.digest_provider.ensure_digest(timeout=timeout)
        return session, digest

    def _outcome(self, response, url):
        content_type = response.headers.get('Content-Type', '')
        content = response.content or b''
        data = None
        if 'json' in content_type.lower() and content:
            try:
                data = response.json()
            except ValueError as e:
                raise TransportError(
                    "Response declared JSON but could not be parsed",
                    status_code=response.status_code,
                    url=url
                ) from e
        return RequestOutcome(
            status_code=response.status_code,
            url=url,
            headers=dict(response.headers),
            data=data,
            content=content
        )
