"""
Proxy URL builder for thumbnails.

Thumbnails are requested far more often than any other variant, so they
bypass the signed-URL cache entirely: the proxy path is stable and its
``v`` query parameter changes only when the stored file changes, letting
the HTTP cache do the rest. Everything here is pure; no network, no state.
"""

import hashlib
from typing import Optional
from urllib.parse import quote, urlencode

from models.resources import ResourceCoordinates

THUMBNAIL_PROXY_PATH = "images/proxy/thumbnail"
FINGERPRINT_LENGTH = 16


def cache_buster_from_path(storage_path: Optional[str]) -> Optional[str]:
    """
    Derive a cache-buster from a storage path.

    The file name changes whenever the file is replaced, which makes it a
    more reliable version marker than any timestamp embedded in the path.

    Args:
        storage_path: Object path such as "owner/container/res/slot/thumb_1700.webp"

    Returns:
        The last path segment, or None for an empty path
    """
    if not storage_path:
        return None
    filename = storage_path.rstrip("/").rsplit("/", 1)[-1]
    return filename or None


def content_fingerprint(data: bytes, length: int = FINGERPRINT_LENGTH) -> str:
    """Short SHA-256 fingerprint of file contents."""
    return hashlib.sha256(data).hexdigest()[:length]


def build_thumbnail_url(
    base_url: str,
    coords: ResourceCoordinates,
    storage_path: Optional[str] = None,
    fingerprint: Optional[str] = None,
    token: Optional[str] = None
) -> str:
    """
    Build the proxy URL of a resource's thumbnail.

    Args:
        base_url: API root, e.g. "https://api.example.com/api"
        coords: Resource coordinates
        storage_path: Storage path of the current thumbnail file, if known
        fingerprint: Content fingerprint to use when no storage path is known
        token: Optional auth token passed as a query parameter

    Returns:
        Proxy URL; identical inputs always give the identical URL
    """
    segments = "/".join(
        quote(str(part), safe="")
        for part in (coords.owner_id, coords.container_id, coords.resource_id, coords.slot_id)
    )
    url = f"{base_url.rstrip('/')}/{THUMBNAIL_PROXY_PATH}/{segments}"

    params = {}
    if token:
        params["token"] = token
    version = cache_buster_from_path(storage_path) or fingerprint
    if version:
        params["v"] = version

    if params:
        return f"{url}?{urlencode(params)}"
    return url


class ProxyURLBuilder:
    """Binds the API root and token for repeated thumbnail URL building."""

    def __init__(self, base_url: str, token: Optional[str] = None):
        self.base_url = base_url
        self.token = token

    def thumbnail_url(
        self,
        coords: ResourceCoordinates,
        storage_path: Optional[str] = None,
        fingerprint: Optional[str] = None
    ) -> str:
        return build_thumbnail_url(
            self.base_url,
            coords,
            storage_path=storage_path,
            fingerprint=fingerprint,
            token=self.token
        )
