"""Asset manifest emitted by the build: generation id plus the precache lists."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

from edgecache.hub.constants import (
    DEFAULT_NAMESPACE_PREFIX,
    HASHED_NAMESPACE_SUFFIX,
    THUMBNAIL_NAMESPACE_SUFFIX,
)

_LIST_FIELDS = ("unhashed_precache", "hashed_precache", "hashed_on_request")


@dataclass(frozen=True)
class AssetManifest:
    """One generation of the application's assets.

    Asset names are relative to the scope the edge process serves
    (e.g. ``"index.html"``, ``"app-647332873.js"``). The hashed lists carry
    a content hash in every name, so their entries never change in place.
    """

    version: str
    generation: str
    unhashed_precache: tuple[str, ...] = ()
    hashed_precache: tuple[str, ...] = ()
    hashed_on_request: tuple[str, ...] = ()
    namespace_prefix: str = DEFAULT_NAMESPACE_PREFIX

    def __post_init__(self):
        if not self.generation:
            raise ValueError("Manifest generation must be a non-empty string")

    @property
    def unhashed_namespace(self) -> str:
        return f"{self.namespace_prefix}-{HASHED_NAMESPACE_SUFFIX}-{self.generation}"

    @property
    def hashed_namespace(self) -> str:
        return f"{self.namespace_prefix}-{HASHED_NAMESPACE_SUFFIX}"

    @property
    def thumbnail_namespace(self) -> str:
        return f"{self.namespace_prefix}-{THUMBNAIL_NAMESPACE_SUFFIX}"

    @property
    def reserved_namespaces(self) -> frozenset[str]:
        return frozenset({self.unhashed_namespace, self.hashed_namespace, self.thumbnail_namespace})

    def hashed_urls(self, scope: str) -> set[str]:
        """Absolute URLs of every hashed asset this generation knows about."""
        return {urljoin(scope, name) for name in self.hashed_precache + self.hashed_on_request}

    def is_cached_on_request(self, asset_name: str) -> bool:
        return asset_name in self.hashed_on_request

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AssetManifest":
        """Build a manifest from its JSON form, validating field types."""
        if not isinstance(data, dict):
            raise ValueError("Manifest must be a JSON object")

        lists = {}
        for name in _LIST_FIELDS:
            value = data.get(name, [])
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"Manifest field '{name}' must be a list of strings")
            lists[name] = tuple(value)

        version = data.get("version")
        generation = data.get("generation")
        if not isinstance(version, str) or not isinstance(generation, str):
            raise ValueError("Manifest 'version' and 'generation' must be strings")

        kwargs = {}
        if "namespace_prefix" in data:
            kwargs["namespace_prefix"] = str(data["namespace_prefix"])

        return cls(version=version, generation=generation, **lists, **kwargs)


def load_manifest(path: str | Path) -> AssetManifest:
    """Load a manifest JSON file written by the build.

    Raises:
        ValueError: If the file is not valid JSON or fails validation
    """
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Manifest {path} is not valid JSON: {e}") from e
    return AssetManifest.from_dict(data)
