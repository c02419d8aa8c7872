# backend/zephyr_worker/storage.py
import logging
import os
from typing import Optional

import aiofiles
import httpx

from .config import Settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class BlobStorage:
    """Vercel Blob: PUT the bytes, get a public url back."""

    def __init__(self, token: str, api_url: str = "https://blob.vercel-storage.com",
                 http: Optional[httpx.AsyncClient] = None):
        if not token:
            raise StorageError("BLOB_READ_WRITE_TOKEN not configured")
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.http = http

    async def upload(self, data: bytes, key: str, content_type: str = "image/png") -> str:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": content_type,
            "x-api-version": "7",
            "x-content-type": content_type,
        }
        url = f"{self.api_url}/{key}"
        if self.http is not None:
            response = await self.http.put(url, content=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=60.0) as http:
                response = await http.put(url, content=data, headers=headers)

        if response.status_code >= 400:
            raise StorageError(f"Blob upload failed: {response.status_code} - {response.text}")
        return response.json()["url"]


class LocalStorage:
    """Dev fallback: files land in STORAGE_DIR and are served by the api."""

    def __init__(self, root: str, public_base_url: str = "http://127.0.0.1:8000"):
        self.root = os.path.abspath(root)
        self.public_base_url = public_base_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    async def upload(self, data: bytes, key: str, content_type: str = "image/png") -> str:
        path = self.path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        async with aiofiles.open(path, "wb") as out_file:
            await out_file.write(data)
        return f"{self.public_base_url}/result/{key}"


def make_storage(settings: Settings):
    if settings.blob_token:
        return BlobStorage(settings.blob_token, settings.blob_api_url)
    logger.warning("BLOB_READ_WRITE_TOKEN not set, storing results under %s", settings.storage_dir)
    return LocalStorage(settings.storage_dir, settings.public_base_url)
