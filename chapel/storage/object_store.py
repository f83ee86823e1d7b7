from __future__ import annotations

import asyncio
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable
from urllib.parse import quote

import httpx

from chapel.config import Settings, settings as default_settings
from chapel.errors import StorageError


logger = logging.getLogger(__name__)


class ObjectExistsError(StorageError):
    code = 'OBJECT_EXISTS'


class ObjectStore(ABC):
    """Blob store keyed by slash-separated paths.

    `get` returns None for a missing object. `put(..., upsert=False)` is the
    create-if-absent primitive and raises ObjectExistsError when the path is taken.
    """

    @abstractmethod
    async def get(self, path: str) -> bytes | None:
        raise NotImplementedError

    @abstractmethod
    async def put(self, path: str, data: bytes, *, content_type: str = 'application/json', upsert: bool = True) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, paths: Iterable[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list(self, directory: str) -> list[str]:
        """Full paths of the objects directly under `directory`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _clean_path(path: str) -> str:
    cleaned = '/'.join(part for part in str(path or '').split('/') if part)
    if not cleaned or any(part in ('.', '..') for part in cleaned.split('/')):
        raise StorageError(f'Invalid object path: {path!r}', details={'path': path})
    return cleaned


def _parent(path: str) -> str:
    return path.rsplit('/', 1)[0] if '/' in path else ''


class MemoryObjectStore(ObjectStore):
    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._content_types: dict[str, str] = {}
        self._lock = threading.Lock()

    async def get(self, path: str) -> bytes | None:
        key = _clean_path(path)
        with self._lock:
            return self._objects.get(key)

    async def put(self, path: str, data: bytes, *, content_type: str = 'application/json', upsert: bool = True) -> None:
        key = _clean_path(path)
        with self._lock:
            if not upsert and key in self._objects:
                raise ObjectExistsError(f'Object already exists: {key}', details={'path': key})
            self._objects[key] = bytes(data)
            self._content_types[key] = content_type

    async def remove(self, paths: Iterable[str]) -> None:
        keys = [_clean_path(path) for path in paths]
        with self._lock:
            for key in keys:
                self._objects.pop(key, None)
                self._content_types.pop(key, None)

    async def list(self, directory: str) -> list[str]:
        prefix = _clean_path(directory)
        with self._lock:
            return sorted(key for key in self._objects if _parent(key) == prefix)

    def content_type(self, path: str) -> str | None:
        return self._content_types.get(_clean_path(path))


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*_clean_path(path).split('/'))

    def _read(self, path: str) -> bytes | None:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f'Failed to read object: {path}', details={'path': path, 'error': str(exc)}) from exc

    def _write(self, path: str, data: bytes, upsert: bool) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if not upsert:
            try:
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError as exc:
                raise ObjectExistsError(f'Object already exists: {path}', details={'path': path}) from exc
            with os.fdopen(fd, 'wb') as handle:
                handle.write(data)
            return
        tmp = target.with_name(f'{target.name}.tmp-{os.getpid()}-{id(data)}')
        tmp.write_bytes(data)
        os.replace(tmp, target)

    def _remove(self, paths: list[str]) -> None:
        for path in paths:
            try:
                self._resolve(path).unlink()
            except FileNotFoundError:
                continue

    def _list(self, directory: str) -> list[str]:
        base = self._resolve(directory)
        if not base.is_dir():
            return []
        prefix = _clean_path(directory)
        return sorted(f'{prefix}/{entry.name}' for entry in base.iterdir() if entry.is_file())

    async def get(self, path: str) -> bytes | None:
        return await asyncio.to_thread(self._read, path)

    async def put(self, path: str, data: bytes, *, content_type: str = 'application/json', upsert: bool = True) -> None:
        try:
            await asyncio.to_thread(self._write, path, bytes(data), upsert)
        except StorageError:
            raise
        except OSError as exc:
            raise StorageError(f'Failed to write object: {path}', details={'path': path, 'error': str(exc)}) from exc

    async def remove(self, paths: Iterable[str]) -> None:
        await asyncio.to_thread(self._remove, list(paths))

    async def list(self, directory: str) -> list[str]:
        return await asyncio.to_thread(self._list, directory)


class SupabaseObjectStore(ObjectStore):
    """Supabase Storage REST backend."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url or not service_key:
            raise StorageError('Supabase storage requires supabase_url and supabase_service_key')
        self.bucket = bucket
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/storage/v1",
            headers={'Authorization': f'Bearer {service_key}', 'apikey': service_key},
            timeout=timeout,
            transport=transport,
        )

    def _object_url(self, path: str) -> str:
        return f'/object/{self.bucket}/{quote(_clean_path(path))}'

    @staticmethod
    def _is_not_found(response: httpx.Response) -> bool:
        if response.status_code == 404:
            return True
        if response.status_code == 400:
            body = response.text.lower()
            return 'not_found' in body or 'not found' in body
        return False

    @staticmethod
    def _is_duplicate(response: httpx.Response) -> bool:
        if response.status_code == 409:
            return True
        if response.status_code == 400:
            body = response.text.lower()
            return 'duplicate' in body or 'already exists' in body or '"409"' in body
        return False

    async def _send(self, method: str, url: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StorageError(f'Storage request failed: {path}', details={'path': path, 'error': str(exc)}) from exc

    async def get(self, path: str) -> bytes | None:
        response = await self._send('GET', self._object_url(path), path)
        if self._is_not_found(response):
            return None
        if response.status_code >= 300:
            raise StorageError(
                f'Failed to download file: {path}',
                code='DOWNLOAD_FAILED',
                details={'path': path, 'status_code': response.status_code, 'body': response.text[:300]},
            )
        return response.content

    async def put(self, path: str, data: bytes, *, content_type: str = 'application/json', upsert: bool = True) -> None:
        response = await self._send(
            'POST',
            self._object_url(path),
            path,
            content=data,
            headers={
                'Content-Type': content_type,
                'x-upsert': 'true' if upsert else 'false',
                'cache-control': 'no-cache',
            },
        )
        if not upsert and self._is_duplicate(response):
            raise ObjectExistsError(f'Object already exists: {path}', details={'path': path})
        if response.status_code >= 300:
            raise StorageError(
                f'Failed to upload file: {path}',
                code='UPLOAD_FAILED',
                details={'path': path, 'status_code': response.status_code, 'body': response.text[:300]},
            )

    async def remove(self, paths: Iterable[str]) -> None:
        prefixes = [_clean_path(path) for path in paths]
        if not prefixes:
            return
        response = await self._send('DELETE', f'/object/{self.bucket}', ','.join(prefixes), json={'prefixes': prefixes})
        if response.status_code >= 300 and not self._is_not_found(response):
            raise StorageError(
                'Failed to remove objects',
                code='REMOVE_FAILED',
                details={'paths': prefixes, 'status_code': response.status_code},
            )

    async def list(self, directory: str) -> list[str]:
        prefix = _clean_path(directory)
        response = await self._send(
            'POST',
            f'/object/list/{self.bucket}',
            prefix,
            json={'prefix': prefix, 'limit': 1000, 'offset': 0, 'sortBy': {'column': 'name', 'order': 'asc'}},
        )
        if response.status_code >= 300:
            raise StorageError(
                f'Failed to list objects: {prefix}',
                code='LIST_FAILED',
                details={'path': prefix, 'status_code': response.status_code},
            )
        # Folders come back with a null id.
        return [f"{prefix}/{item['name']}" for item in response.json() if item.get('id') is not None]

    async def close(self) -> None:
        await self._client.aclose()


def build_object_store(config: Settings = default_settings) -> ObjectStore:
    backend = (config.storage_backend or 'memory').strip().lower()
    if backend == 'supabase':
        return SupabaseObjectStore(
            config.supabase_url,
            config.supabase_service_key,
            config.storage_bucket,
            timeout=config.storage_timeout_seconds,
        )
    if backend == 'local':
        return LocalObjectStore(Path(config.storage_root) / config.storage_bucket)
    if backend != 'memory':
        logger.warning('unknown_storage_backend_falling_back_to_memory', extra={'backend': backend})
    return MemoryObjectStore()
