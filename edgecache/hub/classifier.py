"""Request classification: decides which fetch and write policy applies to a URL."""

import enum
import re
from urllib.parse import parse_qs, urljoin, urlsplit

from edgecache.hub.constants import ENTRY_DOCUMENT, THUMBNAIL_MAX_DIMENSION, THUMBNAIL_PATH_PREFIX

# Leading integer after optional whitespace, as a browser's parseInt(value, 10) reads it
_LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)")


class RequestKind(enum.Enum):
    """Mutually exclusive outcomes of classify()."""

    ROOT_DOCUMENT = "root_document"
    CACHEABLE_THUMBNAIL = "cacheable_thumbnail"
    PASSTHROUGH = "passthrough"


def _origin(parts) -> tuple[str, str]:
    return parts.scheme.lower(), parts.netloc.lower()


def _dimension(query: dict[str, list[str]], name: str) -> int | None:
    values = query.get(name)
    match = _LEADING_INTEGER.match(values[0]) if values else None
    if match is None:
        return None
    return int(match.group(1))


def classify(url: str, scope: str, max_dimension: int = THUMBNAIL_MAX_DIMENSION) -> RequestKind:
    """Classify a request URL relative to the scope this process serves.

    A URL whose origin and path equal the scope's is the root document,
    whatever its query string. A thumbnail is cacheable only when both
    ``width`` and ``height`` start with an integer no larger than
    ``max_dimension``; anything else is passthrough.
    """
    parts = urlsplit(url)
    base = urlsplit(scope)

    if _origin(parts) == _origin(base) and (parts.path or "/") == (base.path or "/"):
        return RequestKind.ROOT_DOCUMENT

    if parts.path.startswith(THUMBNAIL_PATH_PREFIX):
        query = parse_qs(parts.query, keep_blank_values=True)
        width = _dimension(query, "width")
        height = _dimension(query, "height")
        if width is not None and height is not None and width <= max_dimension and height <= max_dimension:
            return RequestKind.CACHEABLE_THUMBNAIL

    return RequestKind.PASSTHROUGH


def entry_document_url(scope: str) -> str:
    """URL of the logical entry document the root document is aliased to."""
    return urljoin(scope, ENTRY_DOCUMENT)


def asset_name(url: str, scope: str) -> str | None:
    """Scope-relative name of a URL, or None when the URL lies outside the scope."""
    if not url.startswith(scope):
        return None
    return url[len(scope):]
