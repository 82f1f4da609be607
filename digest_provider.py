import logging
import threading
import time

import requests

from config import Config
from errors import AuthError, TransportError, error_from_response
from headers import build_headers
from models import Digest, OperationKind
from single_flight import SingleFlight

logger = logging.getLogger(__name__)

CONTEXT_INFO_PATH = '/_api/contextinfo'


def parse_context_info(body):
    """Return (FormDigestValue, FormDigestTimeoutSeconds) from a contextinfo response"""
    info = body.get('d', body) if isinstance(body, dict) else {}
    info = info.get('GetContextWebInformation', info) if isinstance(info, dict) else {}
    value = info.get('FormDigestValue')
    lifetime = info.get('FormDigestTimeoutSeconds', Config.DEFAULT_DIGEST_LIFETIME)
    return value, lifetime


class DigestProvider:
    """Fetches and caches the form digest required on mutating calls"""

    def __init__(self, session_manager, site_url=None, http=None, clock=time.time,
                 expiry_margin=Config.DIGEST_EXPIRY_MARGIN, timeout=Config.HANDSHAKE_TIMEOUT):
        self.session_manager = session_manager
        self.site_url = (site_url or session_manager.credentials.site_url).rstrip('/')
        self.http = http or requests.Session()
        self.clock = clock
        self.expiry_margin = expiry_margin
        self.timeout = timeout
        self.fetch_count = 0
        self._digest = None
        self._lock = threading.Lock()
        self._flight = SingleFlight('digest')

    def ensure_digest(self, timeout=None):
        """Return a valid digest, fetching a new one when the cached one expired"""
        digest = self._current()
        if digest is not None:
            return digest
        return self._flight.run(lambda: self._fetch(timeout), current=self._current, timeout=timeout)

    def is_valid(self, digest):
        return digest is not None and digest.is_valid(self.clock(), self.expiry_margin)

    def is_current(self, digest):
        """True while ``digest`` is the cached digest and still valid"""
        return digest is not None and digest is self._digest and self.is_valid(digest)

    def invalidate(self, digest=None):
        """
        Drop the cached digest.
        With ``digest`` given, only drop it if it is still the cached one.
        """
        with self._lock:
            if self._digest is None:
                return False
            if digest is not None and self._digest is not digest:
                return False
            self._digest = None
        return True

    def _current(self):
        digest = self._digest
        if self.is_valid(digest):
            return digest
        return None

    def _fetch(self, timeout=None):
        # Re-authenticates first when the session is gone or expired
        session = self.session_manager.ensure_session(timeout=timeout)
        url = f"{self.site_url}{CONTEXT_INFO_PATH}"
        headers = build_headers(OperationKind.READ_VERBOSE, session)

        self.fetch_count += 1
        logger.info(f"Fetching form digest from {url}")
        try:
            response = self.http.post(url, headers=headers.to_dict(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Digest request failed: {e.__class__.__name__}", url=url) from e

        if response.status_code in (401, 403):
            self.session_manager.invalidate(session)
            raise AuthError(
                f"Session rejected while fetching form digest (status {response.status_code})",
                AuthError.SESSION_REJECTED,
                retryable=True,
                status_code=response.status_code
            )
        if not 200 <= response.status_code < 300:
            raise error_from_response(response, url)

        try:
            value, lifetime = parse_context_info(response.json())
            lifetime = float(lifetime)
        except (TypeError, ValueError) as e:
            raise TransportError("Malformed digest response", status_code=response.status_code, url=url) from e
        if not value:
            raise TransportError("Digest response has no FormDigestValue", status_code=response.status_code, url=url)

        now = self.clock()
        digest = Digest(value=value, acquired_at=now, expires_at=now + lifetime)
        with self._lock:
            self._digest = digest
        logger.info(f"Form digest refreshed, valid for {lifetime:.0f}s")
        return digest
