import os
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from stefna.config import StorageConfig
from stefna.errors import UploadFailed
from stefna.pipeline.storage import AssetMetadata, LocalAssetStore, R2AssetStore, download_to


def _http(status=200, content=b"\x89PNG fake"):
    def handler(request):
        return httpx.Response(status, content=content)

    return httpx.Client(transport=httpx.MockTransport(handler))


def _config():
    return StorageConfig(r2_account_id="acct", r2_access_key_id="k", r2_secret_access_key="s",
                         r2_bucket="assets", r2_public_url="https://pub.test/")


META = AssetMetadata(job_id="job-1", user_id="u1", kind="single-image")


class TestR2AssetStore:
    def test_upload_uses_deterministic_key_and_confirms(self):
        s3 = MagicMock()
        s3.head_object.return_value = {"ContentLength": 9}
        store = R2AssetStore(s3, _config(), _http())

        handle = store.upload("https://cdn.test/out.png?sig=1", META)

        assert handle.public_handle == "outputs/u1/job-1.png"
        assert handle.public_url == "https://pub.test/outputs/u1/job-1.png"
        put = s3.put_object.call_args.kwargs
        assert put["Bucket"] == "assets"
        assert put["ContentType"] == "image/png"
        assert put["Metadata"]["job_id"] == "job-1"
        s3.head_object.assert_called_once_with(Bucket="assets", Key="outputs/u1/job-1.png")

    def test_repeated_upload_overwrites_same_key(self):
        s3 = MagicMock()
        s3.head_object.return_value = {"ContentLength": 9}
        store = R2AssetStore(s3, _config(), _http())

        store.upload("https://cdn.test/a.png", META)
        store.upload("https://cdn.test/b.png", META)

        keys = {c.kwargs["Key"] for c in s3.put_object.call_args_list}
        assert keys == {"outputs/u1/job-1.png"}

    def test_local_video_path(self, tmp_path):
        video = tmp_path / "story.mp4"
        video.write_bytes(b"ftypmp42")
        s3 = MagicMock()
        s3.head_object.return_value = {"ContentLength": 8}

        handle = R2AssetStore(s3, _config(), _http()).upload(
            str(video), AssetMetadata("job-2", "u1", "story-multi-shot"),
        )
        assert handle.public_handle == "outputs/u1/job-2.mp4"

    def test_download_failure_is_upload_failed(self):
        store = R2AssetStore(MagicMock(), _config(), _http(status=404))
        with pytest.raises(UploadFailed):
            store.upload("https://cdn.test/gone.png", META)

    def test_put_failure_is_upload_failed(self):
        s3 = MagicMock()
        s3.put_object.side_effect = ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        with pytest.raises(UploadFailed):
            R2AssetStore(s3, _config(), _http()).upload("https://cdn.test/a.png", META)

    def test_unconfirmed_object_is_upload_failed(self):
        s3 = MagicMock()
        s3.head_object.return_value = {"ContentLength": 0}
        with pytest.raises(UploadFailed, match="not retrievable"):
            R2AssetStore(s3, _config(), _http()).upload("https://cdn.test/a.png", META)


class TestLocalAssetStore:
    def test_copies_into_keyed_layout(self, tmp_path):
        store = LocalAssetStore(str(tmp_path / "assets"), _http())

        handle = store.upload("https://cdn.test/out.png", META)

        target = tmp_path / "assets" / "outputs" / "u1" / "job-1.png"
        assert target.read_bytes() == b"\x89PNG fake"
        assert handle.public_url.startswith("file://")

    def test_missing_local_source(self, tmp_path):
        store = LocalAssetStore(str(tmp_path / "assets"), _http())
        with pytest.raises(UploadFailed):
            store.upload(str(tmp_path / "nope.mp4"), META)


def test_download_to_writes_file(tmp_path):
    path = download_to(_http(content=b"shot"), "https://cdn.test/s.png", str(tmp_path / "s.png"))
    assert os.path.getsize(path) == 4
