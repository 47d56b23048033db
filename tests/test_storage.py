import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from botocore.stub import Stubber

from app.config import Settings
from app.errors import UploadError
from app.storage import ObjectStoreUploader, build_s3_client, make_object_key


@pytest.fixture
def s3_settings():
    return Settings(
        _env_file=None,
        S3_ENABLED=True,
        S3_ENDPOINT="https://s3.storage.test",
        S3_BUCKET="media",
        S3_ACCESS_KEY="AKIDTEST",
        S3_SECRET_KEY="secret-test",
        S3_URL_EXPIRATION=3600,
    )


@pytest.fixture
def stubbed(s3_settings):
    uploader = ObjectStoreUploader.from_settings(s3_settings)
    with Stubber(uploader.client) as stub:
        yield uploader, stub


def test_object_key_layout():
    key = make_object_key("kling-uploads", "My Clip (final).mp4")
    prefix, name = key.split("/")
    assert prefix == "kling-uploads"
    millis, rand, rest = name.split("-", 2)
    assert millis.isdigit() and len(rand) == 8
    assert rest == "My_Clip_final_.mp4"


def test_object_keys_do_not_collide():
    keys = {make_object_key("p", "a.png") for _ in range(200)}
    assert len(keys) == 200


def test_object_key_drops_directories():
    assert make_object_key("p", "../../etc/passwd").endswith("-passwd")


def test_upload_returns_presigned_url(stubbed, tmp_path):
    uploader, stub = stubbed
    src = tmp_path / "face.png"
    src.write_bytes(b"png-bytes")
    stub.add_response("put_object", {"ETag": '"abc"'})

    url = asyncio.run(uploader.upload(src, "face.png", "image/png"))

    stub.assert_no_pending_responses()
    parts = urlsplit(url)
    assert parts.netloc == "s3.storage.test"
    assert parts.path.startswith("/media/kling-uploads/")
    assert parts.path.endswith("-face.png")
    assert parse_qs(parts.query)["X-Amz-Expires"] == ["3600"]


class RecordingClient:
    def __init__(self):
        self.puts = []

    def put_object(self, **kwargs):
        kwargs["Body"] = kwargs["Body"].read()
        self.puts.append(kwargs)
        return {}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://signed.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def test_upload_sends_bytes_and_content_type(tmp_path):
    client = RecordingClient()
    uploader = ObjectStoreUploader(client, "media", expires_in=86400)
    src = tmp_path / "dance.mp4"
    src.write_bytes(b"mp4-bytes")

    url = uploader.upload_sync(src, "dance.mp4", "video/mp4")

    (put,) = client.puts
    assert put["Bucket"] == "media"
    assert put["Body"] == b"mp4-bytes"
    assert put["ContentType"] == "video/mp4"
    assert put["Key"].startswith("kling-uploads/")
    assert url == f"https://signed.test/media/{put['Key']}?expires=86400"


def test_upload_without_content_type(tmp_path):
    client = RecordingClient()
    src = tmp_path / "blob"
    src.write_bytes(b"x")
    ObjectStoreUploader(client, "media").upload_sync(src, "blob", None)
    assert client.puts[0]["ContentType"] == "application/octet-stream"


def test_client_error_becomes_upload_error(stubbed, tmp_path):
    uploader, stub = stubbed
    src = tmp_path / "face.png"
    src.write_bytes(b"png-bytes")
    stub.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(UploadError) as exc:
        uploader.upload_sync(src, "face.png", "image/png")
    assert exc.value.status_code == 500
    assert exc.value.message.startswith("Failed to upload to S3")


def test_missing_file_becomes_upload_error(stubbed, tmp_path):
    uploader, _ = stubbed
    with pytest.raises(UploadError):
        uploader.upload_sync(tmp_path / "gone.png", "gone.png", "image/png")


def test_bucket_is_required(s3_settings):
    with pytest.raises(RuntimeError):
        ObjectStoreUploader.from_settings(s3_settings.model_copy(update={"S3_BUCKET": None}))


def test_client_uses_custom_endpoint(s3_settings):
    client = build_s3_client(s3_settings)
    assert client.meta.endpoint_url == "https://s3.storage.test"
    assert client.meta.region_name == "us-east-1"
