"""Asset storage and signed URLs.

The :class:`AssetStoreGateway` is the only owner of generated assets.  Jobs
hold an asset id (``result_ref``) and ask the gateway for a URL whenever a
client needs one.

Storage
-------
Bytes live behind the :class:`ObjectStore` interface (put / get / delete /
exists).  :class:`LocalObjectStore` keeps each asset as two files in the
assets directory: ``<id>.bin`` with the bytes and ``<id>.json`` with the mime
type and size.  A cloud bucket can be dropped in by implementing the same four
methods.

Signed URLs
-----------
A signed URL has the form::

    /api/assets/<id>?expires=<epoch seconds>&signature=<hex>

where ``signature = HMAC-SHA256(secret, "<id>:<expires>")``.  Signing never
touches the stored bytes, so re-signing is cheap and yields a fresh expiry.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from .errors import AssetNotFound, InvalidSignature
from .jobs import StoredAsset

logger = logging.getLogger(__name__)

ASSET_ROUTE = "/api/assets"


class ObjectStore(ABC):
    """Minimal object storage capability used by the gateway."""

    @abstractmethod
    def put(self, key: str, data: bytes, mime: str) -> None:
        """Store *data* under *key*."""

    @abstractmethod
    def get(self, key: str) -> tuple[bytes, str]:
        """Return ``(data, mime)`` for *key*.

        Raises:
            AssetNotFound: If *key* is not stored.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is a no-op."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether *key* is stored."""


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store rooted at *root*."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise AssetNotFound(key)
        return self.root / f"{key}.bin", self.root / f"{key}.json"

    def put(self, key: str, data: bytes, mime: str) -> None:
        data_path, meta_path = self._paths(key)
        data_path.write_bytes(data)
        with open(meta_path, "w", encoding="utf-8") as handle:
            json.dump({"mime": mime, "size": len(data)}, handle)

    def get(self, key: str) -> tuple[bytes, str]:
        data_path, meta_path = self._paths(key)
        if not data_path.exists() or not meta_path.exists():
            raise AssetNotFound(key)
        with open(meta_path, encoding="utf-8") as handle:
            meta = json.load(handle)
        return data_path.read_bytes(), meta["mime"]

    def delete(self, key: str) -> None:
        for path in self._paths(key):
            path.unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        data_path, _ = self._paths(key)
        return data_path.exists()


class AssetStoreGateway:
    """Persist generated bytes and issue short-lived signed URLs.

    Args:
        store: Byte storage backend.
        secret: HMAC key for URL signatures.
        default_ttl: Lifetime in seconds of URLs issued by :meth:`store`.
        clock: Wall-clock source (epoch seconds).
    """

    def __init__(
        self,
        store: ObjectStore,
        secret: str,
        default_ttl: int = 900,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._secret = secret.encode("utf-8")
        self.default_ttl = default_ttl
        self._clock = clock

    def _signature(self, asset_id: str, expires: int) -> str:
        message = f"{asset_id}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def store(self, data: bytes, mime: str) -> StoredAsset:
        """Persist *data* and return the asset with a freshly signed URL."""
        asset_id = uuid.uuid4().hex
        self._store.put(asset_id, data, mime)
        url, expires = self._sign(asset_id, self.default_ttl)
        logger.info("Stored asset %s (%s, %d bytes)", asset_id, mime, len(data))
        return StoredAsset(id=asset_id, mime=mime, size=len(data), url=url, expires_at=expires)

    def _sign(self, asset_id: str, ttl: int) -> tuple[str, int]:
        expires = int(self._clock()) + int(ttl)
        signature = self._signature(asset_id, expires)
        return f"{ASSET_ROUTE}/{asset_id}?expires={expires}&signature={signature}", expires

    def sign_url(self, asset_id: str, ttl: int | None = None) -> str:
        """Return a new signed URL for an existing asset.

        Raises:
            AssetNotFound: If the asset does not exist.
        """
        if not self._store.exists(asset_id):
            raise AssetNotFound(asset_id)
        url, _ = self._sign(asset_id, self.default_ttl if ttl is None else ttl)
        return url

    def verify(self, asset_id: str, expires: int, signature: str) -> None:
        """Check a URL's signature and expiry.

        Raises:
            InvalidSignature: If the signature does not match or has expired.
        """
        expected = self._signature(asset_id, expires)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignature("Signature mismatch")
        if self._clock() > expires:
            raise InvalidSignature("Signed URL has expired")

    def open(self, asset_id: str, expires: int, signature: str) -> tuple[bytes, str]:
        """Verify a signed URL and return the asset's ``(data, mime)``."""
        self.verify(asset_id, expires, signature)
        return self._store.get(asset_id)

    def delete(self, asset_id: str) -> None:
        """Remove an asset.  Missing assets are ignored."""
        try:
            self._store.delete(asset_id)
        except AssetNotFound:
            return
        logger.info("Deleted asset %s", asset_id)
