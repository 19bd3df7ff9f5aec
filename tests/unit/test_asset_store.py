"""Tests for mediaforge.core.asset_store — object storage and signed URLs."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from mediaforge.core.asset_store import AssetStoreGateway, LocalObjectStore
from mediaforge.core.errors import AssetNotFound, InvalidSignature


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _parse(url: str) -> tuple[str, int, str]:
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    return parsed.path.rsplit("/", 1)[-1], int(query["expires"][0]), query["signature"][0]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def object_store(temp_dir) -> LocalObjectStore:
    return LocalObjectStore(temp_dir / "assets")


@pytest.fixture
def gateway(object_store, clock) -> AssetStoreGateway:
    return AssetStoreGateway(object_store, secret="s3cret", default_ttl=300, clock=clock)


class TestLocalObjectStore:
    def test_put_get(self, object_store):
        object_store.put("abc", b"\x89PNG", "image/png")
        assert object_store.exists("abc")
        assert object_store.get("abc") == (b"\x89PNG", "image/png")

    def test_get_missing(self, object_store):
        with pytest.raises(AssetNotFound):
            object_store.get("nope")

    def test_delete_is_idempotent(self, object_store):
        object_store.put("abc", b"data", "text/html")
        object_store.delete("abc")
        object_store.delete("abc")
        assert not object_store.exists("abc")

    @pytest.mark.parametrize("key", ["../escape", ".hidden", "a/b", ""])
    def test_rejects_path_like_keys(self, object_store, key):
        with pytest.raises(AssetNotFound):
            object_store.get(key)


class TestAssetStoreGateway:
    def test_store_returns_signed_asset(self, gateway, clock):
        asset = gateway.store(b"png-bytes", "image/png")

        assert asset.mime == "image/png"
        assert asset.size == len(b"png-bytes")
        assert asset.expires_at == clock.now + 300
        assert asset.url.startswith(f"/api/assets/{asset.id}?")

    def test_signed_url_opens_asset(self, gateway):
        asset = gateway.store(b"png-bytes", "image/png")
        asset_id, expires, signature = _parse(asset.url)
        assert gateway.open(asset_id, expires, signature) == (b"png-bytes", "image/png")

    def test_resign_gives_fresh_expiry_without_rewrite(self, gateway, object_store, clock):
        asset = gateway.store(b"png-bytes", "image/png")
        data_path = object_store.root / f"{asset.id}.bin"
        written_at = data_path.stat().st_mtime_ns
        clock.now += 100

        url = gateway.sign_url(asset.id, ttl=60)

        assert data_path.stat().st_mtime_ns == written_at

        asset_id, expires, signature = _parse(url)
        assert url != asset.url
        assert expires == clock.now + 60
        assert gateway.open(asset_id, expires, signature)[1] == "image/png"

    def test_resign_is_idempotent(self, gateway):
        asset = gateway.store(b"x", "audio/wav")
        assert gateway.sign_url(asset.id) == gateway.sign_url(asset.id)

    def test_expired_url_is_refused(self, gateway, clock):
        asset = gateway.store(b"x", "audio/wav")
        asset_id, expires, signature = _parse(asset.url)
        clock.now = expires + 1
        with pytest.raises(InvalidSignature):
            gateway.open(asset_id, expires, signature)

    def test_tampered_expiry_is_refused(self, gateway):
        asset = gateway.store(b"x", "audio/wav")
        asset_id, expires, signature = _parse(asset.url)
        with pytest.raises(InvalidSignature):
            gateway.open(asset_id, expires + 3600, signature)

    def test_signature_bound_to_secret(self, object_store, clock):
        first = AssetStoreGateway(object_store, secret="one", clock=clock)
        second = AssetStoreGateway(object_store, secret="two", clock=clock)
        asset_id, expires, signature = _parse(first.store(b"x", "text/html").url)
        with pytest.raises(InvalidSignature):
            second.verify(asset_id, expires, signature)

    def test_sign_unknown_asset(self, gateway):
        with pytest.raises(AssetNotFound):
            gateway.sign_url("missing")

    def test_delete(self, gateway):
        asset = gateway.store(b"x", "text/html")
        gateway.delete(asset.id)
        with pytest.raises(AssetNotFound):
            gateway.sign_url(asset.id)
        gateway.delete(asset.id)
