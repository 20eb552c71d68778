"""edgecache - offline asset cache and instance coordination for an edge process."""

__version__ = "0.1.36"
