# app/context.py
# Everything a request needs, built once per app instead of living in module globals

from dataclasses import dataclass
from pathlib import Path

from fastapi import Request

from .auth import TokenSigner
from .config import Settings
from .kling import KlingClient
from .storage import ObjectStoreUploader
from .watermark import Watermarker


@dataclass
class AppContext:
    settings: Settings
    kling: KlingClient
    uploader: ObjectStoreUploader | None
    watermarker: Watermarker
    upload_dir: Path

    async def aclose(self) -> None:
        await self.kling.aclose()


def build_context(settings: Settings, uploader=None, transport=None, runner=None) -> AppContext:
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)

    signer = TokenSigner(
        settings.KLING_ACCESS_KEY,
        settings.KLING_SECRET_KEY,
        ttl=settings.TOKEN_TTL,
        skew=settings.TOKEN_SKEW,
    )
    kling = KlingClient(
        settings.KLING_API_BASE_URL,
        signer,
        create_timeout=settings.KLING_CREATE_TIMEOUT,
        status_timeout=settings.KLING_STATUS_TIMEOUT,
        transport=transport,
    )
    if uploader is None and settings.S3_ENABLED:
        uploader = ObjectStoreUploader.from_settings(settings)

    watermarker = Watermarker(kling, settings) if runner is None else Watermarker(kling, settings, runner=runner)
    return AppContext(
        settings=settings,
        kling=kling,
        uploader=uploader,
        watermarker=watermarker,
        upload_dir=upload_dir,
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context
