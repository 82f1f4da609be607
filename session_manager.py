"""
Session Manager
===============
Establishes and caches the authenticated session used by every REST call.

Two handshakes are available:

* ``UserPasswordHandshake``: the SharePoint Online claims flow. The user's
  name and password are exchanged at the security token service (extSTS)
  for a binary security token, which the site's sign-in page turns into the
  ``FedAuth`` and ``rtFa`` cookies.
* ``ClientSecretHandshake``: an Azure AD app registration exchanging its
  client secret for a bearer token through ``azure-identity``.

The held ``AuthSession`` is replaced, never mutated. Concurrent callers that
find it missing or expired share one handshake (see ``SingleFlight``).
"""

import logging
import re
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import replace
from datetime import datetime, timezone
from xml.sax.saxutils import escape

import requests
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import ClientSecretCredential

from config import Config
from errors import AuthError, ConfigError
from models import AuthSession
from single_flight import SingleFlight

logger = logging.getLogger(__name__)

SIGN_IN_PATH = '/_forms/default.aspx?wa=wsignin1.0'
SESSION_COOKIES = ('FedAuth', 'rtFa')

NAMESPACES = {
    'S': 'http://www.w3.org/2003/05/soap-envelope',
    'wsse': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd',
    'wsu': 'http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd',
    'psf': 'http://schemas.microsoft.com/Passport/SoapServices/SOAPFault',
}

SECURITY_TOKEN_REQUEST = """<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope" xmlns:a="http://www.w3.org/2005/08/addressing" xmlns:u="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd">
  <s:Header>
    <a:Action s:mustUnderstand="1">http://schemas.xmlsoap.org/ws/2005/02/trust/RST/Issue</a:Action>
    <a:ReplyTo>
      <a:Address>http://www.w3.org/2005/08/addressing/anonymous</a:Address>
    </a:ReplyTo>
    <a:To s:mustUnderstand="1">{auth_endpoint}</a:To>
    <o:Security s:mustUnderstand="1" xmlns:o="http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd">
      <o:UsernameToken>
        <o:Username>{username}</o:Username>
        <o:Password>{password}</o:Password>
      </o:UsernameToken>
    </o:Security>
  </s:Header>
  <s:Body>
    <t:RequestSecurityToken xmlns:t="http://schemas.xmlsoap.org/ws/2005/02/trust">
      <wsp:AppliesTo xmlns:wsp="http://schemas.xmlsoap.org/ws/2004/09/policy">
        <a:EndpointReference>
          <a:Address>{sign_in_url}</a:Address>
        </a:EndpointReference>
      </wsp:AppliesTo>
      <t:KeyType>http://schemas.xmlsoap.org/ws/2005/05/identity/NoProofKey</t:KeyType>
      <t:RequestType>http://schemas.xmlsoap.org/ws/2005/02/trust/Issue</t:RequestType>
      <t:TokenType>urn:oasis:names:tc:SAML:1.0:assertion</t:TokenType>
    </t:RequestSecurityToken>
  </s:Body>
</s:Envelope>"""


def parse_token_expiry(value):
    """Parse a WS-Trust timestamp like 2024-05-01T10:00:00.0000000Z into epoch seconds"""
    match = re.match(r'(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})', (value or '').strip())
    if not match:
        return None
    moment = datetime.strptime(match.group(1), '%Y-%m-%dT%H:%M:%S')
    return moment.replace(tzinfo=timezone.utc).timestamp()


class UserPasswordHandshake:
    """Exchange a user name and password for SharePoint Online session cookies"""

    def __init__(self, http=None, timeout=Config.HANDSHAKE_TIMEOUT):
        self.http = http
        self.timeout = timeout

    def __call__(self, credentials):
        sign_in_url = f"https://{credentials.domain}{SIGN_IN_PATH}"
        # A private HTTP session per handshake keeps cookies out of shared jars
        http = self.http or requests.Session()
        try:
            token, expires_at = self._request_security_token(http, credentials, sign_in_url)
            cookies = self._sign_in(http, token, sign_in_url)
        except requests.exceptions.RequestException as e:
            raise AuthError(
                f"Authentication endpoint unreachable: {e.__class__.__name__}",
                AuthError.ENDPOINT_UNREACHABLE,
                retryable=True
            ) from e
        finally:
            if self.http is None:
                http.close()

        return AuthSession(cookies=cookies, acquired_at=time.time(), expires_at=expires_at)

    def _request_security_token(self, http, credentials, sign_in_url):
        envelope = SECURITY_TOKEN_REQUEST.format(
            auth_endpoint=escape(credentials.auth_endpoint),
            username=escape(credentials.username),
            password=escape(credentials.password),
            sign_in_url=escape(sign_in_url)
        )
        logger.info(f"Requesting security token from {credentials.auth_endpoint}")
        response = http.post(
            credentials.auth_endpoint,
            data=envelope.encode('utf-8'),
            headers={'Content-Type': 'application/soap+xml; charset=utf-8'},
            timeout=self.timeout
        )
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            if response.status_code >= 500:
                raise self._unavailable(response.status_code) from e
            raise AuthError(
                "Security token service returned malformed XML",
                AuthError.UNEXPECTED_RESPONSE,
                status_code=response.status_code
            ) from e

        # Rejected credentials come back as a SOAP fault, often with status 500
        fault = root.find('.//S:Fault', NAMESPACES)
        if fault is not None:
            detail = fault.find('.//psf:text', NAMESPACES)
            if detail is None:
                detail = fault.find('.//S:Text', NAMESPACES)
            reason = detail.text.strip() if detail is not None and detail.text else 'credentials rejected'
            raise AuthError(
                f"Security token request rejected: {reason}",
                AuthError.INVALID_CREDENTIALS,
                status_code=response.status_code
            )
        if response.status_code >= 500:
            raise self._unavailable(response.status_code)

        token = root.find('.//wsse:BinarySecurityToken', NAMESPACES)
        if token is None or not (token.text or '').strip():
            raise AuthError(
                "Security token missing from token service response",
                AuthError.UNEXPECTED_RESPONSE,
                status_code=response.status_code
            )
        expires = root.find('.//wsu:Expires', NAMESPACES)
        expires_at = parse_token_expiry(expires.text) if expires is not None else None
        return token.text.strip(), expires_at

    def _unavailable(self, status_code):
        return AuthError(
            f"Security token service failed with status {status_code}",
            AuthError.ENDPOINT_UNREACHABLE,
            retryable=True,
            status_code=status_code
        )

    def _sign_in(self, http, token, sign_in_url):
        logger.info(f"Exchanging security token for session cookies at {sign_in_url}")
        response = http.post(
            sign_in_url,
            data=token,
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            allow_redirects=False,
            timeout=self.timeout
        )
        received = response.cookies.get_dict()
        cookies = {name: received[name] for name in SESSION_COOKIES if received.get(name)}
        if len(cookies) != len(SESSION_COOKIES):
            missing = [name for name in SESSION_COOKIES if name not in cookies]
            raise AuthError(
                f"Sign-in did not return session cookies: {', '.join(missing)}",
                AuthError.UNEXPECTED_RESPONSE,
                status_code=response.status_code
            )
        return cookies


class ClientSecretHandshake:
    """Acquire a bearer token for the site with an Azure AD app registration"""

    def __init__(self, scope=None):
        self.scope = scope

    def __call__(self, credentials):
        if not credentials.tenant_id:
            raise ConfigError("A tenant id is required for app authentication")

        scope = self.scope or f"https://{credentials.domain}/.default"
        logger.info(f"Requesting token for scope: {scope}")
        credential = ClientSecretCredential(
            tenant_id=credentials.tenant_id,
            client_id=credentials.username,
            client_secret=credentials.password
        )
        try:
            token = credential.get_token(scope)
        except ClientAuthenticationError as e:
            raise AuthError(
                f"Azure AD rejected the client credentials: {e.message}",
                AuthError.INVALID_CREDENTIALS
            ) from e
        except AzureError as e:
            raise AuthError(
                f"Azure AD token endpoint unreachable: {e.__class__.__name__}",
                AuthError.ENDPOINT_UNREACHABLE,
                retryable=True
            ) from e
        finally:
            credential.close()

        logger.info("Token acquired successfully")
        return AuthSession(access_token=token.token, acquired_at=time.time(), expires_at=token.expires_on)


def default_handshake(credentials, http=None):
    """Pick the handshake matching the credentials: app-only when a tenant id is set"""
    if credentials.tenant_id:
        return ClientSecretHandshake()
    return UserPasswordHandshake(http=http)


class SessionManager:
    """
    Owns the session lifecycle for one client.

    States::

        unauthenticated -> authenticating -> authenticated
        authenticated -> expired | invalidated -> authenticating -> ...
    """

    def __init__(self, credentials, handshake=None, clock=time.time,
                 expiry_margin=Config.SESSION_EXPIRY_MARGIN):
        self.credentials = credentials
        self.handshake = handshake or default_handshake(credentials)
        self.clock = clock
        self.expiry_margin = expiry_margin
        self.handshake_count = 0
        self._session = None
        self._invalidated = False
        self._lock = threading.Lock()
        self._flight = SingleFlight('session')

    @property
    def state(self):
        if self._flight.in_flight:
            return 'authenticating'
        session = self._session
        if session is None:
            return 'invalidated' if self._invalidated else 'unauthenticated'
        if not session.is_valid(self.clock(), self.expiry_margin):
            return 'expired'
        return 'authenticated'

    def ensure_session(self, timeout=None):
        """Return a valid session, authenticating when none is held"""
        session = self._current()
        if session is not None:
            return session
        return self._flight.run(self._authenticate, current=self._current, timeout=timeout)

    def invalidate(self, session=None):
        """
        Drop the held session so the next caller re-authenticates.
        With ``session`` given, only drop it if it is still the held one.
        """
        with self._lock:
            if self._session is None:
                return False
            if session is not None and self._session is not session:
                return False
            self._session = None
            self._invalidated = True
        logger.warning(f"Session for {self.credentials.site_url} invalidated")
        return True

    def refresh(self, timeout=None):
        """Force a new handshake"""
        self.invalidate()
        return self.ensure_session(timeout=timeout)

    def is_current(self, session):
        """True while ``session`` is the held session and still valid"""
        return session is not None and session is self._current()

    def _current(self):
        session = self._session
        if session is not None and session.is_valid(self.clock(), self.expiry_margin):
            return session
        return None

    def _authenticate(self):
        self.handshake_count += 1
        logger.info(f"Authenticating against {self.credentials.site_url}")
        try:
            session = self.handshake(self.credentials)
        except AuthError as e:
            logger.error(f"Authentication failed ({e.reason}): {str(e)}")
            raise

        # Stamped with this manager's clock so freshness checks share one time base
        session = replace(session, acquired_at=self.clock())
        with self._lock:
            self._session = session
            self._invalidated = False
        logger.info("Successfully authenticated with SharePoint")
        return session
