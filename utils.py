import logging
import re

from config import Config

def setup_logging(level=None):
    """Configure logging settings"""
    logging.basicConfig(
        level=level or Config.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )

def validate_filename(filename):
    """
    Validate filename against SharePoint restrictions
    """
    if not filename:
        return False

    # Check length
    if len(filename) > 128:
        return False

    # Check invalid characters
    invalid_chars = r'[<>:"/\\|?*]'
    if re.search(invalid_chars, filename):
        return False

    # Check if filename starts or ends with space or period
    if filename.startswith((' ', '.')) or filename.endswith((' ', '.')):
        return False

    return True

def quote_odata(value):
    """Escape a value for use inside an OData string literal ('...')"""
    return str(value).replace("'", "''")

def normalize_site_path(path):
    """
    Return a site path with a leading slash and no trailing slash.
    The root site is the empty string.
    """
    path = (path or '').strip()
    path = path.rstrip('/')
    if not path:
        return ''
    if not path.startswith('/'):
        path = f"/{path}"
    return path

def to_server_relative(site_path, path):
    """
    Turn a site-relative path into a server-relative one.
    Paths already rooted at the site are returned unchanged.
    """
    path = (path or '').strip()
    if site_path and (path == site_path or path.startswith(f"{site_path}/")):
        return path
    if not site_path and path.startswith('/'):
        return path
    return f"{site_path}/{path.lstrip('/')}"
