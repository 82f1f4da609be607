"""
Header Builder: derives the exact header set for one REST call.

Pure functions only. Headers are built fresh per call and never stored on a
client, so verb-specific headers cannot leak from one call into another.
"""

import json

from models import HeaderSet, OperationKind

JSON_NOMETADATA = 'application/json;odata=nometadata'
JSON_VERBOSE = 'application/json;odata=verbose'
OCTET_STREAM = 'application/octet-stream'

_WITH_BODY = (OperationKind.CREATE, OperationKind.UPDATE)


def serialize_body(body):
    """Return the body as sent on the wire: dicts and lists become JSON text"""
    if isinstance(body, (dict, list)):
        return json.dumps(body)
    return body


def is_binary(body):
    """Bytes and file-like objects are sent as opaque streams, text as JSON"""
    return isinstance(body, (bytes, bytearray, memoryview)) or hasattr(body, 'read')


def auth_headers(session):
    if session.access_token:
        return [('Authorization', f"Bearer {session.access_token}")]
    return [('Cookie', session.cookie_header())]


def content_headers(body):
    body = serialize_body(body)
    length = len(body.encode('utf-8')) if isinstance(body, str) else 0
    headers = HeaderSet([
        ('Content-Type', JSON_VERBOSE),
        ('Content-Length', length),
    ])
    if is_binary(body):
        # A fixed length would be stale for a stream; the transport sets it
        headers = HeaderSet(list(headers.items()) + [('Content-Type', OCTET_STREAM)]).without('Content-Length')
    return headers


def build_headers(kind, session, digest=None, body=None):
    """
    Build the headers for one call of the given operation kind.

    ``digest`` is required for create, update and delete. ``body`` only
    shapes the content headers of create and update calls.
    """
    kind = OperationKind(kind)
    if kind.requires_digest and digest is None:
        raise ValueError(f"A form digest is required for {kind.value} requests")

    accept = JSON_NOMETADATA if kind is OperationKind.READ else JSON_VERBOSE
    headers = [('Accept', accept)]
    headers.extend(auth_headers(session))

    if kind.requires_digest:
        headers.append(('X-RequestDigest', digest.value))

    if kind is OperationKind.UPDATE:
        headers.append(('X-HTTP-Method', 'MERGE'))
        headers.append(('IF-MATCH', '*'))
    elif kind is OperationKind.DELETE:
        headers.append(('X-HTTP-Method', 'DELETE'))

    if kind in _WITH_BODY:
        headers.extend(content_headers(body).items())

    return HeaderSet(headers)
