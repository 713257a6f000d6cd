"""
Artifact store: persists generated content and returns a stable public reference.

Uploads go to Supabase Storage over its REST API when SUPABASE_URL is set,
otherwise files are written to a local directory and referenced by file URI.
"""
import os
import time
import logging
import mimetypes
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

import httpx

from .errors import StorageWriteFailed
from .models import ArtifactKind
from .settings import LOCAL_STORAGE_DIR, STORAGE_BUCKETS, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "text/plain": ".txt",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/jpeg": ".jpg",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
}


def extension_for(content_type: str) -> str:
    base = content_type.split(";")[0].strip().lower()
    return _EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ".bin"


def object_key(segment_id: str, kind: ArtifactKind, content_type: str, stamp: Optional[int] = None) -> str:
    stamp = stamp if stamp is not None else int(time.time() * 1000)
    return f"{segment_id}/{kind.value}_{stamp}{extension_for(content_type)}"


class ArtifactStore:
    def __init__(self, *, base_url: str = SUPABASE_URL, service_key: str = SUPABASE_SERVICE_ROLE_KEY,
                 buckets: Optional[Dict[str, str]] = None, local_dir: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key
        self.buckets = buckets or STORAGE_BUCKETS
        self._transport = transport
        self.local_dir = Path(local_dir or LOCAL_STORAGE_DIR or os.path.join(tempfile.gettempdir(), "tale-forge"))
        self.remote = bool(self.base_url and self.service_key)
        if not self.remote:
            logger.warning(f"Object storage not configured - writing artifacts under {self.local_dir}")

    async def put(self, segment_id: str, kind: ArtifactKind, payload: Union[bytes, str], content_type: str) -> str:
        data = payload.encode("utf-8") if isinstance(payload, str) else payload
        key = object_key(segment_id, kind, content_type)
        bucket = self.buckets[kind.value]
        if self.remote:
            return await self._upload(bucket, key, data, content_type)
        return self._write_local(bucket, key, data)

    async def _upload(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": content_type,
            "x-upsert": "false",
        }
        try:
            async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
                r = await client.post(f"{self.base_url}/storage/v1/object/{bucket}/{key}", headers=headers, content=data)
                r.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Storage upload to {bucket}/{key} failed: {e}")
            raise StorageWriteFailed(f"upload to {bucket}/{key} failed: {e}") from e
        url = f"{self.base_url}/storage/v1/object/public/{bucket}/{key}"
        logger.info(f"Uploaded {len(data)} bytes to {url}")
        return url

    def _write_local(self, bucket: str, key: str, data: bytes) -> str:
        path = self.local_dir / bucket / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageWriteFailed(f"local write to {path} failed: {e}") from e
        logger.info(f"Saved {len(data)} bytes to {path}")
        return path.resolve().as_uri()
