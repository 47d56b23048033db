from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.context import build_context
from app.main import create_app

API_HOST = "api.kling.test"
CDN_HOST = "cdn.kling.test"
RESULT_URL = f"https://{CDN_HOST}/results/abc.mp4"


class FakeUploader:
    def __init__(self):
        self.calls = []
        self.error = None

    async def upload(self, path, name, content_type):
        assert Path(path).is_file()
        if self.error is not None:
            raise self.error
        self.calls.append((Path(path), name, content_type))
        return f"https://bucket.test/{name}?X-Amz-Signature=abc"


class FakeKling:
    """httpx MockTransport handler standing in for the Kling API and its CDN."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.tasks: dict[str, dict] = {}
        self.create_response = (
            200,
            {
                "code": 0,
                "message": "SUCCEED",
                "data": {
                    "task_id": "860742396434587732",
                    "task_status": "submitted",
                    "created_at": 1722769557708,
                    "task_info": {"external_task_id": "ext-1"},
                },
            },
        )
        self.status_error = None
        self.fail_with = None
        self.video_body = b"\x00\x00\x00\x18ftypmp42" * 64
        self.cdn_status = 200
        self.cdn_redirect = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

        path = request.url.path
        if request.url.host == API_HOST:
            if request.method == "POST" and path == "/v1/videos/motion-control":
                status, body = self.create_response
                return httpx.Response(status, json=body)
            if request.method == "GET" and path.startswith("/v1/videos/motion-control/"):
                if self.status_error is not None:
                    status, body = self.status_error
                    return httpx.Response(status, json=body)
                task_id = path.rsplit("/", 1)[1]
                if task_id not in self.tasks:
                    return httpx.Response(404, json={"code": 1203, "message": "task not found"})
                return httpx.Response(200, json={"code": 0, "message": "SUCCEED", "data": self.tasks[task_id]})
        if request.url.host == CDN_HOST:
            if self.cdn_redirect:
                return httpx.Response(302, headers={"Location": self.cdn_redirect})
            return httpx.Response(self.cdn_status, content=self.video_body)
        return httpx.Response(500, text="unexpected request")

    @property
    def api_requests(self):
        return [r for r in self.requests if r.url.host == API_HOST]

    @property
    def downloads(self):
        return [r for r in self.requests if r.url.host != API_HOST]


class FakeRunner:
    def __init__(self):
        self.commands = []
        self.output = b"watermarked-mp4"
        self.error = None

    def __call__(self, cmd, timeout, max_output):
        self.commands.append(cmd)
        if self.error is not None:
            raise self.error
        assert Path(cmd[cmd.index("-i") + 1]).is_file()
        Path(cmd[-1]).write_bytes(self.output)


def succeeded_task(task_id, url=RESULT_URL):
    videos = [{"id": "v1", "url": url, "duration": "5.1"}] if url else []
    return {"task_id": task_id, "task_status": "succeed", "task_result": {"videos": videos}}


@pytest.fixture
def settings(tmp_path):
    logo = tmp_path / "assets" / "logo.png"
    logo.parent.mkdir()
    logo.write_bytes(b"\x89PNG\r\n\x1a\nlogo")
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        KLING_API_BASE_URL=f"https://{API_HOST}",
        KLING_ACCESS_KEY="ak-test-access",
        KLING_SECRET_KEY="sk-test-secret",
        S3_ENABLED=False,
        UPLOAD_DIR=tmp_path / "uploads",
        LOGO_PATH=logo,
        MAX_IMAGE_BYTES=1024,
        MAX_VIDEO_BYTES=4096,
    )


@pytest.fixture
def upstream():
    return FakeKling()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_client(settings, upstream, uploader, runner):
    clients = []

    def _make(settings=settings, uploader=uploader):
        ctx = build_context(settings, uploader=uploader, transport=httpx.MockTransport(upstream), runner=runner)
        client = TestClient(create_app(settings, ctx))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def upload_dir(settings):
    return Path(settings.UPLOAD_DIR)
