import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum


class OperationKind(Enum):
    """The request shapes the REST API distinguishes"""

    READ = 'read'
    READ_VERBOSE = 'read-verbose'
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'

    @property
    def requires_digest(self):
        return self in (OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE)

    @property
    def http_method(self):
        # Updates and deletes travel as POST with a method-override header
        return 'GET' if not self.requires_digest else 'POST'


class Permission(IntEnum):
    """Built-in SharePoint role definition ids"""

    LIMITED_ACCESS = 1073741825
    READ = 1073741826
    CONTRIBUTE = 1073741827
    DESIGN = 1073741828
    FULL_CONTROL = 1073741829
    EDIT = 1073741830
    VIEW_ONLY = 1073741924


def _within(expires_at, now, margin):
    return expires_at is None or now < expires_at - margin


@dataclass(frozen=True)
class AuthSession:
    """Cookies or bearer token produced by a successful handshake"""

    cookies: Mapping = field(default_factory=dict, repr=False)
    access_token: str = field(default=None, repr=False)
    acquired_at: float = 0.0
    expires_at: float = None

    def __post_init__(self):
        object.__setattr__(self, 'cookies', dict(self.cookies))

    def is_valid(self, now, margin=0.0):
        if not self.cookies and not self.access_token:
            return False
        return _within(self.expires_at, now, margin)

    def cookie_header(self):
        return '; '.join(f"{name}={value}" for name, value in self.cookies.items())


@dataclass(frozen=True)
class Digest:
    """Form digest value required on every mutating call"""

    value: str = field(repr=False)
    acquired_at: float
    expires_at: float

    def is_valid(self, now, margin=0.0):
        return bool(self.value) and _within(self.expires_at, now, margin)


class HeaderSet(Mapping):
    """Immutable, ordered header mapping with case-insensitive lookup"""

    __slots__ = ('_items',)

    def __init__(self, items=()):
        if isinstance(items, Mapping):
            items = items.items()
        merged = {}
        for name, value in items:
            # Later values replace earlier ones with the same name, keeping first position
            for existing in list(merged):
                if existing.lower() == name.lower():
                    del merged[existing]
                    break
            merged[name] = str(value)
        object.__setattr__(self, '_items', tuple(merged.items()))

    def __setattr__(self, name, value):
        raise AttributeError("HeaderSet is immutable")

    def __getitem__(self, name):
        lowered = name.lower()
        for key, value in self._items:
            if key.lower() == lowered:
                return value
        raise KeyError(name)

    def __iter__(self):
        return (key for key, _ in self._items)

    def __len__(self):
        return len(self._items)

    def __contains__(self, name):
        if not isinstance(name, str):
            return False
        lowered = name.lower()
        return any(key.lower() == lowered for key, _ in self._items)

    def __repr__(self):
        names = ', '.join(key for key, _ in self._items)
        return f"HeaderSet({names})"

    def without(self, *names):
        """Return a copy with the given headers removed"""
        dropped = {name.lower() for name in names}
        return HeaderSet((key, value) for key, value in self._items if key.lower() not in dropped)

    def to_dict(self):
        return dict(self._items)


@dataclass(frozen=True)
class RequestOutcome:
    """Successful response of one REST call"""

    status_code: int
    url: str
    headers: Mapping = field(default_factory=dict, repr=False)
    data: object = field(default=None, repr=False)
    content: bytes = field(default=b'', repr=False)

    @property
    def text(self):
        return self.content.decode('utf-8', errors='replace')

    @property
    def payload(self):
        """The JSON body with the verbose ``d`` envelope removed"""
        if isinstance(self.data, dict) and isinstance(self.data.get('d'), dict):
            return self.data['d']
        return self.data

    @property
    def server_relative_url(self):
        payload = self.payload
        if isinstance(payload, dict):
            return payload.get('ServerRelativeUrl')
        return None

    def json(self):
        if self.data is None:
            return json.loads(self.text)
        return self.data
