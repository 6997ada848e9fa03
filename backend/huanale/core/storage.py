import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from typing import Any

from supabase import Client, create_client

from huanale.core.config import get_settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A storage read failed or the object could not be found."""


class StorageAccessDenied(StorageError):
    """The path is outside the caller's own folder."""


@dataclass
class StoredObject:
    path: str
    content: bytes
    content_type: str


def get_storage_client() -> Client:
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, key)


def guess_content_type(path: str) -> str:
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "image/jpeg"


def _signed_url_of(result: Any) -> str:
    if isinstance(result, dict):
        return result.get("signedURL") or result.get("signedUrl") or ""
    return getattr(result, "signed_url", "") or ""


class BillStorage:
    """Bill images of one user.

    Objects live under ``{user_id}/...`` in the bills bucket; any other path
    is rejected before the storage service is contacted.
    """

    def __init__(self, client: Client, bucket: str, user_id: str) -> None:
        self._client = client
        self._bucket = bucket
        self._user_id = str(user_id)

    def check_owner(self, path: str) -> None:
        if not path.startswith(f"{self._user_id}/") or ".." in path.split("/"):
            raise StorageAccessDenied(path)

    def _download_sync(self, path: str) -> bytes:
        try:
            return self._client.storage.from_(self._bucket).download(path)
        except Exception as exc:
            raise StorageError(f"download failed for {path}") from exc

    async def download(self, path: str) -> StoredObject:
        self.check_owner(path)
        content = await asyncio.to_thread(self._download_sync, path)
        if not content:
            raise StorageError(f"empty object at {path}")
        return StoredObject(path=path, content=content, content_type=guess_content_type(path))

    def _signed_url_sync(self, path: str, expires_in: int) -> str:
        try:
            result = self._client.storage.from_(self._bucket).create_signed_url(path, expires_in)
        except Exception as exc:
            raise StorageError(f"signing failed for {path}") from exc
        url = _signed_url_of(result)
        if not url:
            raise StorageError(f"signing returned no url for {path}")
        return url

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        self.check_owner(path)
        return await asyncio.to_thread(self._signed_url_sync, path, expires_in)


def build_bill_storage(user_id: str) -> BillStorage:
    settings = get_settings()
    return BillStorage(get_storage_client(), settings.bill_storage_bucket, user_id)
