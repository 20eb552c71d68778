"""Shared constants for hub components.

Tier names are derived from these prefixes so the reconciler, the mediator
and the API agree on which namespaces are reserved.
"""

# Namespace naming
DEFAULT_NAMESPACE_PREFIX = "edgecache"
HASHED_NAMESPACE_SUFFIX = "assets"
THUMBNAIL_NAMESPACE_SUFFIX = "media-thumbnails-v2"

# Logical entry document served for the bare scope URL
ENTRY_DOCUMENT = "index.html"

# Thumbnail classification
THUMBNAIL_PATH_PREFIX = "/_matrix/media/r0/thumbnail/"
THUMBNAIL_MAX_DIMENSION = 50

# Fetch modes
MODE_SAME_ORIGIN = "same-origin"
MODE_CORS = "cors"

# Methods that can be served from or written to a cache namespace
CACHEABLE_METHODS = frozenset({"GET", "HEAD"})

# Instance message types
MSG_VERSION = "version"
MSG_SKIP_WAITING = "skipWaiting"
MSG_CLOSE_SESSION = "closeSession"

# Meta keys persisted in the store
META_ACTIVE_GENERATION = "active_generation"
