from __future__ import annotations

import logging
import re
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path

import anyio
import httpx

from sharegate.errors import BlobMissing, TransientStoreError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_segment(value: str, fallback: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned[:120] or fallback


class BlobHandle(ABC):
    """An opened blob: its size is known and bytes can be streamed from it."""

    size: int

    @abstractmethod
    def iter_range(self, start: int, end: int) -> AsyncIterator[bytes]:
        """Yield bytes ``start..end`` inclusive."""

    @abstractmethod
    async def aclose(self) -> None: ...


class BlobStore(ABC):
    @abstractmethod
    async def put(self, name_hint: str, data: bytes, *, owner_id: str | None = None) -> str:
        """Store ``data`` and return the opaque key it can be read back with."""

    @abstractmethod
    async def open(self, key: str) -> BlobHandle:
        """Raise ``BlobMissing`` when the key does not exist."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Idempotent; deleting a missing key is not an error."""

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------- local filesystem


class LocalBlobHandle(BlobHandle):
    def __init__(self, fh: anyio.AsyncFile[bytes], size: int, chunk_size: int) -> None:
        self._fh = fh
        self.size = size
        self._chunk = chunk_size

    async def iter_range(self, start: int, end: int) -> AsyncIterator[bytes]:
        await self._fh.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            try:
                chunk = await self._fh.read(min(self._chunk, remaining))
            except OSError as err:
                raise TransientStoreError("blob") from err
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk

    async def aclose(self) -> None:
        await self._fh.aclose()


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path, chunk_size: int = 64 * 1024) -> None:
        self.root = Path(root)
        self.chunk_size = int(chunk_size)

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise BlobMissing(f"key outside blob root: {key!r}")
        return path

    async def put(self, name_hint: str, data: bytes, *, owner_id: str | None = None) -> str:
        owner = _safe_segment(owner_id or "anonymous", "anonymous")
        name = _safe_segment(name_hint, "blob")
        key = f"{owner}/{int(time.time() * 1000)}_{secrets.token_hex(4)}_{name}"
        path = anyio.Path(self._path(key))
        try:
            await path.parent.mkdir(parents=True, exist_ok=True)
            await path.write_bytes(data)
        except OSError as err:
            raise TransientStoreError("blob") from err
        return key

    async def open(self, key: str) -> BlobHandle:
        path = self._path(key)
        try:
            fh = await anyio.open_file(path, "rb")
        except FileNotFoundError as err:
            raise BlobMissing(key) from err
        except OSError as err:
            raise TransientStoreError("blob") from err
        try:
            size = (await anyio.Path(path).stat()).st_size
        except OSError as err:
            await fh.aclose()
            raise TransientStoreError("blob") from err
        return LocalBlobHandle(fh, size, self.chunk_size)

    async def delete(self, key: str) -> None:
        path = anyio.Path(self._path(key))
        try:
            await path.unlink(missing_ok=True)
        except OSError as err:
            raise TransientStoreError("blob") from err

    async def ping(self) -> bool:
        try:
            await anyio.Path(self.root).mkdir(parents=True, exist_ok=True)
            return True
        except OSError:
            logger.debug("blob root not writable: %s", self.root, exc_info=True)
            return False


# ---------------------------------------------------------------- IPFS (kubo HTTP API)


class IpfsBlobHandle(BlobHandle):
    def __init__(self, client: httpx.AsyncClient, api: str, cid: str, size: int) -> None:
        self._client = client
        self._api = api
        self._cid = cid
        self.size = size

    async def iter_range(self, start: int, end: int) -> AsyncIterator[bytes]:
        params = {"arg": self._cid, "offset": str(start), "length": str(end - start + 1)}
        try:
            async with self._client.stream("POST", f"{self._api}/cat", params=params) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err

    async def aclose(self) -> None:
        return None


class IpfsBlobStore(BlobStore):
    def __init__(self, api_url: str, client: httpx.AsyncClient | None = None) -> None:
        self.api = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, read=60.0))

    async def put(self, name_hint: str, data: bytes, *, owner_id: str | None = None) -> str:
        files = {"file": (name_hint or "blob", data)}
        try:
            r = await self._client.post(f"{self.api}/add", files=files, params={"pin": "true"})
            r.raise_for_status()
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err
        return r.json()["Hash"]  # CID

    async def open(self, key: str) -> BlobHandle:
        try:
            r = await self._client.post(f"{self.api}/files/stat", params={"arg": f"/ipfs/{key}"})
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err
        if r.status_code == 500 and "not found" in r.text.lower():
            raise BlobMissing(key)
        try:
            r.raise_for_status()
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err
        return IpfsBlobHandle(self._client, self.api, key, int(r.json().get("Size", 0)))

    async def delete(self, key: str) -> None:
        try:
            r = await self._client.post(f"{self.api}/pin/rm", params={"arg": key})
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err
        # kubo answers 500 "not pinned" for blobs that are already gone
        if r.status_code == 500 and "not pinned" in r.text.lower():
            return
        try:
            r.raise_for_status()
        except httpx.HTTPError as err:
            raise TransientStoreError("blob") from err

    async def ping(self) -> bool:
        try:
            r = await self._client.post(f"{self.api}/id", timeout=3)
            return r.is_success
        except httpx.HTTPError:
            logger.debug("ipfs ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._client.aclose()
