"""Unit tests for the local image store."""

import httpx
import pytest

from listing_pipeline.core.storage import LocalStorage


@pytest.fixture
def local_storage(tmp_path):
    return LocalStorage(
        base_path=str(tmp_path / "storage"),
        public_base_url="http://localhost:8000/",
        signing_secret="secret"
    )


@pytest.mark.asyncio
async def test_put_then_read(local_storage):
    key = await local_storage.put("enhanced/p1/declutter-1.jpg", b"jpeg")

    assert key == "enhanced/p1/declutter-1.jpg"
    assert await local_storage.exists(key)
    assert await local_storage.read(key) == b"jpeg"


@pytest.mark.asyncio
async def test_signed_url(local_storage):
    await local_storage.put("raw/p1.jpg", b"raw")

    url = await local_storage.get_url("raw/p1.jpg", expires_in=60)

    assert url.startswith("http://localhost:8000/static/storage/raw/p1.jpg?expires=")
    assert "&sig=" in url


@pytest.mark.asyncio
async def test_missing_key(local_storage):
    with pytest.raises(FileNotFoundError):
        await local_storage.read("raw/missing.jpg")
    with pytest.raises(FileNotFoundError):
        await local_storage.get_url("raw/missing.jpg")
    assert await local_storage.delete("raw/missing.jpg") is False


@pytest.mark.asyncio
async def test_keys_cannot_escape_root(local_storage):
    with pytest.raises(ValueError):
        await local_storage.put("../outside.jpg", b"x")


def signed_params(url):
    params = httpx.URL(url).params
    return int(params["expires"]), params["sig"]


@pytest.mark.asyncio
async def test_signed_url_resolves_to_the_file(local_storage):
    await local_storage.put("raw/p1.jpg", b"raw")
    expires, sig = signed_params(await local_storage.get_url("raw/p1.jpg", expires_in=60))

    path = local_storage.resolve_signed("raw/p1.jpg", expires, sig)

    assert path.read_bytes() == b"raw"


@pytest.mark.asyncio
async def test_tampered_signature_is_refused(local_storage):
    await local_storage.put("raw/p1.jpg", b"raw")
    await local_storage.put("raw/p2.jpg", b"other")
    expires, sig = signed_params(await local_storage.get_url("raw/p1.jpg", expires_in=60))

    with pytest.raises(PermissionError):
        local_storage.resolve_signed("raw/p2.jpg", expires, sig)
    with pytest.raises(PermissionError):
        local_storage.resolve_signed("raw/p1.jpg", expires + 3600, sig)
    with pytest.raises(PermissionError):
        local_storage.resolve_signed("raw/p1.jpg", expires, "")


@pytest.mark.asyncio
async def test_expired_url_is_refused(local_storage):
    await local_storage.put("raw/p1.jpg", b"raw")
    expires, sig = signed_params(await local_storage.get_url("raw/p1.jpg", expires_in=-10))

    with pytest.raises(PermissionError):
        local_storage.resolve_signed("raw/p1.jpg", expires, sig)


@pytest.mark.asyncio
async def test_signature_depends_on_the_secret(local_storage, tmp_path):
    await local_storage.put("raw/p1.jpg", b"raw")
    expires, sig = signed_params(await local_storage.get_url("raw/p1.jpg", expires_in=60))
    other = LocalStorage(base_path=str(tmp_path / "storage"), signing_secret="another-secret")

    with pytest.raises(PermissionError):
        other.resolve_signed("raw/p1.jpg", expires, sig)


@pytest.mark.asyncio
async def test_deleted_object_is_not_found(local_storage):
    await local_storage.put("raw/p1.jpg", b"raw")
    expires, sig = signed_params(await local_storage.get_url("raw/p1.jpg", expires_in=60))
    await local_storage.delete("raw/p1.jpg")

    with pytest.raises(FileNotFoundError):
        local_storage.resolve_signed("raw/p1.jpg", expires, sig)
