import os
import logging
from dataclasses import dataclass, field
from urllib.parse import urlparse

from config import Config
from errors import ConfigError
from utils import normalize_site_path

logger = logging.getLogger(__name__)

USER_MODE = 'user'
APP_MODE = 'app'


@dataclass(frozen=True)
class Credentials:
    """Identity, secret and target site for one client instance"""

    username: str
    password: str = field(repr=False)
    domain: str
    site_path: str = ''
    auth_endpoint: str = Config.AUTH_ENDPOINT
    tenant_id: str = None

    def __post_init__(self):
        if not self.username:
            raise ConfigError("A username (or client id) is required")
        if not self.password:
            raise ConfigError("A password (or client secret) is required")

        domain = (self.domain or '').strip().rstrip('/')
        if not domain or '://' in domain or '/' in domain:
            raise ConfigError(
                f"Invalid SharePoint domain '{self.domain}'. Expected a bare host like contoso.sharepoint.com"
            )
        endpoint = urlparse(self.auth_endpoint or '')
        if endpoint.scheme != 'https' or not endpoint.netloc:
            raise ConfigError(f"Invalid authentication endpoint '{self.auth_endpoint}'")

        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'domain', domain.lower())
        object.__setattr__(self, 'site_path', normalize_site_path(self.site_path))

    @classmethod
    def from_site_url(cls, username, password, site_url, **kwargs):
        """Build credentials from a full site URL like https://contoso.sharepoint.com/sites/team"""
        parsed = urlparse((site_url or '').strip())
        if parsed.scheme != 'https' or not parsed.netloc:
            raise ConfigError(
                "Invalid SharePoint URL format. Expected: https://<tenant>.sharepoint.com/..."
            )
        return cls(
            username=username,
            password=password,
            domain=parsed.netloc,
            site_path=parsed.path,
            **kwargs
        )

    @property
    def site_url(self):
        return f"https://{self.domain}{self.site_path}"


def load_credentials(environ=None, mode=None):
    """Load credentials from environment variables"""
    environ = os.environ if environ is None else environ
    mode = (mode or environ.get('SHAREPOINT_AUTH_MODE') or Config.AUTH_MODE).lower()

    if mode == APP_MODE:
        required = ['AZURE_CLIENT_ID', 'AZURE_CLIENT_SECRET', 'AZURE_TENANT_ID', 'SHAREPOINT_SITE_URL']
    elif mode == USER_MODE:
        required = ['SHAREPOINT_USERNAME', 'SHAREPOINT_PASSWORD', 'SHAREPOINT_SITE_URL']
    else:
        raise ConfigError(f"Unknown authentication mode '{mode}'. Expected '{USER_MODE}' or '{APP_MODE}'")

    missing = [name for name in required if not environ.get(name)]
    if missing:
        raise ConfigError(f"Missing required credentials: {', '.join(missing)}")

    auth_endpoint = environ.get('SHAREPOINT_AUTH_ENDPOINT') or Config.AUTH_ENDPOINT

    if mode == APP_MODE:
        credentials = Credentials.from_site_url(
            environ['AZURE_CLIENT_ID'],
            environ['AZURE_CLIENT_SECRET'],
            environ['SHAREPOINT_SITE_URL'],
            auth_endpoint=auth_endpoint,
            tenant_id=environ['AZURE_TENANT_ID']
        )
    else:
        credentials = Credentials.from_site_url(
            environ['SHAREPOINT_USERNAME'],
            environ['SHAREPOINT_PASSWORD'],
            environ['SHAREPOINT_SITE_URL'],
            auth_endpoint=auth_endpoint
        )

    logger.info(f"Loaded {mode} credentials for site: {credentials.site_url}")
    return credentials
