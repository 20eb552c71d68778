"""Request and response values passed between the store, the mediator and the network."""

from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class AssetRequest:
    """An intercepted request.

    Cache identity is the full URL, query string included, so thumbnail
    dimensions are part of the key.
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def with_url(self, url: str) -> "AssetRequest":
        """Return a copy addressing another URL with the same method and headers."""
        return replace(self, url=url)


@dataclass(frozen=True)
class AssetResponse:
    """A fully buffered response, as stored in a namespace or read from the network."""

    url: str
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return self.status < 400

    def to_dict(self) -> dict[str, Any]:
        """Summary without the body, for API listings and logs."""
        return {
            "url": self.url,
            "status": self.status,
            "headers": dict(self.headers),
            "size": len(self.body),
        }
