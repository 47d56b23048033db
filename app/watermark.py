# app/watermark.py
# Finished Kling video -> local temp file -> ffmpeg logo overlay -> temp output

import asyncio
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit
from uuid import uuid4

from .config import Settings
from .errors import LogoMissing, ResultHostRejected, ResultMissing, TaskNotReady, UpstreamError, WatermarkError
from .kling import KlingClient
from .logger import get_logger

logger = get_logger(__name__)

SUCCESS_STATUS = "succeed"

_UNSAFE_ID = re.compile(r"[^A-Za-z0-9_-]+")


def logo_filter(max_width: int = 160, max_height: int = 80, opacity: float = 0.85, margin: int = 20) -> str:
    """
    filter_complex graph: fit the logo inside max_width x max_height (aspect kept,
    lanczos), fade it to `opacity`, then pin it `margin` px from the top-right corner.
    """
    return (
        f"[1:v]scale=iw*min({max_width}/iw\\,{max_height}/ih):-1:flags=lanczos,"
        f"format=rgba,colorchannelmixer=aa={opacity}[logo];"
        f"[0:v][logo]overlay=W-w-{margin}:{margin}"
    )


def build_ffmpeg_command(ffmpeg_bin: str, input_path: Path, logo_path: Path, output_path: Path, graph: str) -> list[str]:
    return [
        ffmpeg_bin,
        "-y",
        "-hide_banner",
        "-nostdin",
        "-i", str(input_path),
        "-i", str(logo_path),
        "-filter_complex", graph,
        # only video is re-encoded
        "-codec:a", "copy",
        "-movflags", "+faststart",
        str(output_path),
    ]


def run_ffmpeg(cmd: list[str], timeout: float, max_output: int) -> None:
    """Blocking ffmpeg run; stderr goes to a temp file and only its tail is kept."""
    logger.info("Running ffmpeg: %s", " ".join(cmd))
    with tempfile.TemporaryFile() as err:
        try:
            p = subprocess.run(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=err, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise WatermarkError(f"ffmpeg timed out after {timeout:g}s") from e
        except OSError as e:
            raise WatermarkError(f"ffmpeg could not be started: {e}") from e

        if p.returncode != 0:
            size = err.seek(0, os.SEEK_END)
            err.seek(max(0, size - max_output))
            stderr = err.read().decode("utf-8", errors="replace")
            logger.error("ffmpeg stderr:\n%s", stderr[-4000:])
            raise WatermarkError(f"ffmpeg failed with exit code {p.returncode}")
    logger.info("ffmpeg watermark complete")


def result_video_url(task: dict) -> str | None:
    result = task.get("task_result") or {}
    videos = result.get("videos") if isinstance(result, dict) else None
    if not isinstance(videos, list) or not videos or not isinstance(videos[0], dict):
        return None
    return videos[0].get("url") or None


def safe_unlink(path: Path | None) -> None:
    if not path:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error("Error deleting file %s: %s", path, e)


@dataclass
class WatermarkJob:
    task_id: str
    input_path: Path
    output_path: Path
    filename: str

    def cleanup(self) -> None:
        safe_unlink(self.input_path)
        safe_unlink(self.output_path)


class Watermarker:
    def __init__(self, kling: KlingClient, settings: Settings, runner=run_ffmpeg):
        self.kling = kling
        self.settings = settings
        self.runner = runner
        self.logo_path = Path(settings.LOGO_PATH)
        self.work_dir = Path(settings.UPLOAD_DIR)
        self.allowed_hosts = settings.result_hosts

    def new_job(self, task_id: str) -> WatermarkJob:
        safe_id = _UNSAFE_ID.sub("_", task_id)[:64] or "task"
        token = uuid4().hex
        return WatermarkJob(
            task_id=task_id,
            input_path=self.work_dir / f"temp-input-{safe_id}-{token}.mp4",
            output_path=self.work_dir / f"temp-output-{safe_id}-{token}.mp4",
            filename=f"{self.settings.DOWNLOAD_FILENAME_PREFIX}-{task_id[:8]}.mp4",
        )

    def _check_host(self, url: str) -> None:
        if not self.allowed_hosts:
            return
        host = (urlsplit(url).hostname or "").lower()
        if host not in self.allowed_hosts:
            logger.warning("Refusing result video from host %r", host)
            raise ResultHostRejected(details={"host": host})

    async def resolve_video_url(self, task_id: str) -> str:
        try:
            task = await self.kling.get_task(task_id)
        except UpstreamError as e:
            # no passthrough on the download route
            raise WatermarkError(e.message, details=e.details) from e

        if not isinstance(task, dict) or task.get("task_status") != SUCCESS_STATUS:
            raise TaskNotReady()

        url = result_video_url(task)
        if not url:
            raise ResultMissing()
        return url

    async def render(self, task_id: str) -> WatermarkJob:
        """
        Produces the watermarked mp4 for a finished task. The caller owns the
        returned job and must call cleanup() once the output is streamed.
        """
        logger.info("Downloading watermarked video for task: %s", task_id)
        url = await self.resolve_video_url(task_id)

        if not self.logo_path.is_file():
            raise LogoMissing()
        self._check_host(url)

        job = self.new_job(task_id)
        try:
            await self.kling.download_result(
                url, job.input_path, self.settings.RESULT_DOWNLOAD_TIMEOUT, allowed_hosts=self.allowed_hosts
            )
            cmd = build_ffmpeg_command(
                self.settings.FFMPEG_BIN,
                job.input_path,
                self.logo_path,
                job.output_path,
                logo_filter(
                    self.settings.LOGO_MAX_WIDTH,
                    self.settings.LOGO_MAX_HEIGHT,
                    self.settings.LOGO_OPACITY,
                    self.settings.LOGO_MARGIN,
                ),
            )
            await asyncio.to_thread(
                self.runner, cmd, self.settings.FFMPEG_TIMEOUT, self.settings.FFMPEG_MAX_OUTPUT_BYTES
            )
            if not job.output_path.is_file():
                raise WatermarkError("ffmpeg produced no output")
        except BaseException:
            job.cleanup()
            raise
        return job
