"""
Asset store: final outputs are copied into R2 under a key derived from the
job, so re-uploading a job overwrites instead of duplicating:

  outputs/{user_id}/{job_id}.{ext}

An upload only counts once `head_object` confirms the object is there.
"""

import logging
import mimetypes
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import httpx
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StorageConfig
from ..errors import UploadFailed

logger = logging.getLogger(__name__)


@dataclass
class AssetMetadata:
    job_id: str
    user_id: str
    kind: str
    extra: dict = field(default_factory=dict)


@dataclass
class AssetHandle:
    public_handle: str
    public_url: str


def output_key(meta: AssetMetadata, ext: str) -> str:
    return f"outputs/{meta.user_id}/{meta.job_id}{ext}"


def _extension(source: str, default: str) -> str:
    path = urlparse(source).path if source.startswith(("http://", "https://")) else source
    ext = os.path.splitext(path)[1].lower()
    return ext if ext in (".jpg", ".jpeg", ".png", ".webp", ".mp4", ".webm", ".mov") else default


def new_r2_client(config: StorageConfig):
    import boto3
    from botocore.config import Config as BotoConfig

    return boto3.client(
        "s3",
        endpoint_url=f"https://{config.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=config.r2_access_key_id,
        aws_secret_access_key=config.r2_secret_access_key,
        config=BotoConfig(signature_version="s3v4"),
        region_name="auto",
    )


class R2AssetStore:
    def __init__(self, s3_client, config: StorageConfig, http: httpx.Client):
        self._s3 = s3_client
        self._config = config
        self._http = http

    def public_url(self, key: str) -> str:
        return f"{self._config.r2_public_url.rstrip('/')}/{key}"

    def _read_source(self, source: str) -> bytes:
        if source.startswith(("http://", "https://")):
            resp = self._http.get(source, follow_redirects=True)
            resp.raise_for_status()
            return resp.content
        with open(source, "rb") as f:
            return f.read()

    def upload(self, source: str, meta: AssetMetadata) -> AssetHandle:
        default_ext = ".mp4" if meta.kind != "single-image" else ".png"
        key = output_key(meta, _extension(source, default_ext))
        content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"

        try:
            data = self._read_source(source)
            if not data:
                raise UploadFailed(f"Asset for job {meta.job_id} is empty")
            self._s3.put_object(
                Bucket=self._config.r2_bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"job_id": meta.job_id, "user_id": meta.user_id, "kind": meta.kind,
                          **{k: str(v) for k, v in meta.extra.items()}},
            )
            head = self._s3.head_object(Bucket=self._config.r2_bucket, Key=key)
        except UploadFailed:
            raise
        except (httpx.HTTPError, OSError, BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for job {meta.job_id} key={key}: {e}")
            raise UploadFailed(f"Upload failed for job {meta.job_id}: {e}") from e

        if not head or head.get("ContentLength", 0) <= 0:
            raise UploadFailed(f"Uploaded object {key} is not retrievable")

        url = self.public_url(key)
        logger.info(f"Uploaded job {meta.job_id} output to R2: {url}")
        return AssetHandle(public_handle=key, public_url=url)


def download_to(http: httpx.Client, url: str, path: str) -> str:
    """Fetch a remote asset onto local disk (shot images for compositing)."""
    with http.stream("GET", url, follow_redirects=True) as resp:
        resp.raise_for_status()
        with open(path, "wb") as f:
            for chunk in resp.iter_bytes():
                f.write(chunk)
    return path


class LocalAssetStore:
    """
    Disk-backed store for local development when R2 is not configured.

    Same key layout and overwrite semantics as `R2AssetStore`; the public
    URL is a file:// URI.
    """

    def __init__(self, root: str, http: httpx.Client):
        self._root = os.path.abspath(root)
        self._http = http

    def upload(self, source: str, meta: AssetMetadata) -> AssetHandle:
        default_ext = ".mp4" if meta.kind != "single-image" else ".png"
        key = output_key(meta, _extension(source, default_ext))
        target = os.path.join(self._root, *key.split("/"))
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if source.startswith(("http://", "https://")):
                download_to(self._http, source, target)
            else:
                shutil.copyfile(source, target)
        except (httpx.HTTPError, OSError) as e:
            raise UploadFailed(f"Upload failed for job {meta.job_id}: {e}") from e

        if not os.path.isfile(target) or os.path.getsize(target) == 0:
            raise UploadFailed(f"Stored asset {key} is empty")
        logger.info(f"Stored job {meta.job_id} output locally: {target}")
        return AssetHandle(public_handle=key, public_url=Path(target).as_uri())
