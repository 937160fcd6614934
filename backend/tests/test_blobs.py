from __future__ import annotations

import httpx
import pytest

from sharegate.errors import BlobMissing, TransientStoreError
from sharegate.storage.blobs import IpfsBlobStore, LocalBlobStore


async def _read(handle, start, end) -> bytes:
    try:
        return b"".join([c async for c in handle.iter_range(start, end)])
    finally:
        await handle.aclose()


@pytest.mark.asyncio
async def test_local_put_open_range_delete(tmp_path):
    store = LocalBlobStore(tmp_path, chunk_size=7)
    data = bytes(range(100))
    key = await store.put("../../etc/passwd", data, owner_id="alice")
    assert key.startswith("alice/")
    assert ".." not in key

    handle = await store.open(key)
    assert handle.size == 100
    assert await _read(handle, 10, 29) == data[10:30]

    await store.delete(key)
    await store.delete(key)  # idempotent
    with pytest.raises(BlobMissing):
        await store.open(key)


@pytest.mark.asyncio
async def test_local_rejects_keys_outside_root(tmp_path):
    store = LocalBlobStore(tmp_path / "blobs")
    with pytest.raises(BlobMissing):
        await store.open("../outside.bin")
    assert await store.ping()


def _ipfs_app(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    arg = request.url.params.get("arg")
    if path.endswith("/add"):
        return httpx.Response(200, json={"Hash": "QmTest", "Size": "5"})
    if path.endswith("/files/stat"):
        if arg == "/ipfs/QmGone":
            return httpx.Response(500, text="file does not exist: not found")
        return httpx.Response(200, json={"Size": 5})
    if path.endswith("/cat"):
        offset = int(request.url.params["offset"])
        length = int(request.url.params["length"])
        return httpx.Response(200, content=b"hello"[offset : offset + length])
    if path.endswith("/pin/rm"):
        if arg == "QmGone":
            return httpx.Response(500, text="not pinned or pinned indirectly")
        return httpx.Response(200, json={"Pins": [arg]})
    if path.endswith("/id"):
        return httpx.Response(200, json={"ID": "peer"})
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_ipfs_store_against_kubo_api():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_ipfs_app))
    store = IpfsBlobStore("http://ipfs:5001/api/v0", client=client)
    try:
        key = await store.put("hello.txt", b"hello")
        assert key == "QmTest"
        handle = await store.open(key)
        assert handle.size == 5
        assert await _read(handle, 1, 3) == b"ell"

        with pytest.raises(BlobMissing):
            await store.open("QmGone")
        await store.delete("QmGone")
        await store.delete(key)
        assert await store.ping()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ipfs_outage_is_transient():
    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = IpfsBlobStore("http://ipfs:5001/api/v0", client=httpx.AsyncClient(transport=httpx.MockTransport(down)))
    try:
        with pytest.raises(TransientStoreError):
            await store.open("QmTest")
        assert not await store.ping()
    finally:
        await store.close()
