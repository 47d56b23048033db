# app/kling.py
# Kling AI motion-control API: create task, poll task, fetch the finished video

import asyncio
from pathlib import Path
from urllib.parse import quote, urlsplit

import httpx

from .auth import TokenSigner
from .errors import KlingResponseError, KlingTransportError, ResultHostRejected, UpstreamError, WatermarkError
from .logger import get_logger
from .schemas import GenerationRequest, TaskCreated

logger = get_logger(__name__)

MOTION_CONTROL_PATH = "/v1/videos/motion-control"


class KlingClient:
    def __init__(
        self,
        base_url: str,
        signer: TokenSigner,
        create_timeout: float = 60,
        status_timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.create_timeout = create_timeout
        self.status_timeout = status_timeout
        self.http = httpx.AsyncClient(transport=transport, follow_redirects=True)

    async def aclose(self) -> None:
        await self.http.aclose()

    # -------------------------------------------------------------------
    # Low level
    # -------------------------------------------------------------------
    async def _call(self, method: str, path: str, *, timeout: float, error_message: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        # fresh token for every request, never reused
        headers = self.signer.auth_headers()
        try:
            r = await self.http.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Kling %s %s failed: %r", method, path, e)
            raise KlingTransportError(f"{error_message}: {e.__class__.__name__}") from e

        if r.is_error:
            raise _upstream_error(r, error_message)

        try:
            body = r.json()
        except ValueError as e:
            raise KlingResponseError(details=r.text[:500]) from e
        if not isinstance(body, dict):
            raise KlingResponseError(details=body)
        return body

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    async def create_task(self, request: GenerationRequest) -> TaskCreated:
        logger.info("Calling Kling AI API: POST %s%s", self.base_url, MOTION_CONTROL_PATH)
        body = await self._call(
            "POST",
            MOTION_CONTROL_PATH,
            json=request.to_payload(),
            timeout=self.create_timeout,
            error_message="Kling AI API error",
        )
        data = body.get("data")
        if not isinstance(data, dict) or not data.get("task_id"):
            raise KlingResponseError(details=body)

        task_info = data.get("task_info") or {}
        created = TaskCreated(
            task_id=str(data["task_id"]),
            task_status=data.get("task_status"),
            created_at=data.get("created_at"),
            external_task_id=task_info.get("external_task_id") if isinstance(task_info, dict) else None,
        )
        logger.info("Kling task created: %s (%s)", created.task_id, created.task_status)
        return created

    async def get_task(self, task_id: str):
        """Returns Kling's `data` object for the task, untouched."""
        body = await self._call(
            "GET",
            f"{MOTION_CONTROL_PATH}/{quote(task_id, safe='')}",
            timeout=self.status_timeout,
            error_message="Failed to fetch task status",
        )
        return body.get("data")

    async def download_result(self, url: str, dest: Path, timeout: float, allowed_hosts=None) -> int:
        """
        Streams `url` into `dest`; the whole transfer is bounded by `timeout` seconds.
        With `allowed_hosts` set, redirects are not followed so every fetched host is one
        the caller already checked.
        """

        async def _fetch() -> int:
            size = 0
            async with self.http.stream("GET", url, timeout=timeout, follow_redirects=not allowed_hosts) as r:
                if r.is_redirect:
                    location = r.headers.get("location", "")
                    raise ResultHostRejected(
                        "Result video redirected away from the allowed hosts",
                        details={"host": (urlsplit(location).hostname or "").lower()},
                    )
                r.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in r.aiter_bytes():
                        await asyncio.to_thread(f.write, chunk)
                        size += len(chunk)
            return size

        try:
            size = await asyncio.wait_for(_fetch(), timeout)
        except asyncio.TimeoutError as e:
            raise WatermarkError("Timed out downloading the generated video") from e
        except httpx.HTTPStatusError as e:
            raise WatermarkError(
                f"Failed to download the generated video: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise WatermarkError(f"Failed to download the generated video: {e}") from e

        logger.info("Downloaded video: %.2f MB", size / 1024 / 1024)
        return size


def _upstream_error(r: httpx.Response, default_message: str) -> Exception:
    if not r.content:
        return KlingResponseError(f"{default_message}: HTTP {r.status_code}")

    try:
        body = r.json()
    except ValueError:
        body = r.text[:500]

    message, code = default_message, None
    if isinstance(body, dict):
        message = body.get("message") or default_message
        code = body.get("code")

    logger.error("Kling error %s: %s", r.status_code, body)
    return UpstreamError(message, status_code=r.status_code, code=code, details=body)
