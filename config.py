import os
from dotenv import load_dotenv

load_dotenv()


def _float_env(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


class Config:
    # Authentication
    AUTH_MODE = os.environ.get('SHAREPOINT_AUTH_MODE', 'user').lower()
    AUTH_ENDPOINT = os.environ.get('SHAREPOINT_AUTH_ENDPOINT') or 'https://login.microsoftonline.com/extSTS.srf'

    # Timeouts in seconds; the handshake is always bounded, business calls only when set
    HANDSHAKE_TIMEOUT = _float_env('SHAREPOINT_HANDSHAKE_TIMEOUT', 30.0)
    REQUEST_TIMEOUT = _float_env('SHAREPOINT_REQUEST_TIMEOUT', None)

    # Artifacts are treated as expired this many seconds before the declared expiry
    DIGEST_EXPIRY_MARGIN = _float_env('SHAREPOINT_DIGEST_MARGIN', 30.0)
    SESSION_EXPIRY_MARGIN = _float_env('SHAREPOINT_SESSION_MARGIN', 60.0)

    # Used when /_api/contextinfo does not declare FormDigestTimeoutSeconds
    DEFAULT_DIGEST_LIFETIME = 1800

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
