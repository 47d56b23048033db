# app/main.py
# FastAPI entry point: upload -> S3 -> Kling motion-control -> poll -> watermarked download

import asyncio
import re
import time
import traceback
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from .config import MIB, Settings, get_settings
from .context import AppContext, build_context, get_context
from .errors import ApiError, UploadError, ValidationFailed, WatermarkError
from .logger import get_logger, set_level
from .schemas import (
    ErrorResponse,
    GenerateResponse,
    GenerationOptions,
    GenerationRequest,
    HealthResponse,
    TaskStatusResponse,
)
from .watermark import WatermarkJob, safe_unlink

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024

router = APIRouter(prefix="/api")

# error bodies share one envelope
_ERRORS = {status: {"model": ErrorResponse} for status in (400, 500)}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def _new_upload_path(upload_dir: Path, filename: str | None) -> Path:
    """<epoch-ms>-<uuid4><ext>; the uuid keeps concurrent same-millisecond uploads apart."""
    suffix = re.sub(r"[^a-z0-9.]", "", Path(filename or "").suffix.lower())[:10]
    return upload_dir / f"{int(time.time() * 1000)}-{uuid4().hex}{suffix}"


async def _save_upload(upload: UploadFile, dest: Path, limit: int) -> int:
    """Copies the upload to dest in chunks; stops early once `limit` is exceeded."""
    size = 0
    with dest.open("wb") as f:
        while chunk := await upload.read(CHUNK_SIZE):
            size += len(chunk)
            if size > limit:
                break
            await asyncio.to_thread(f.write, chunk)
    return size


def _parse_options(prompt: str, character_orientation: str, mode: str, keep_original_sound: str) -> GenerationOptions:
    if not character_orientation or not mode:
        raise ValidationFailed("character_orientation and mode are required")
    try:
        return GenerationOptions(
            prompt=prompt or "",
            character_orientation=character_orientation,
            mode=mode,
            keep_original_sound=keep_original_sound or "yes",
        )
    except ValidationError as e:
        details = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
        raise ValidationFailed("Invalid value for " + ", ".join(d["field"] for d in details), details=details) from e


def _cleanup(paths: list[Path]) -> None:
    for p in paths:
        safe_unlink(p)


async def _iter_file(job: WatermarkJob):
    try:
        with open(job.output_path, "rb") as f:
            while chunk := await asyncio.to_thread(f.read, CHUNK_SIZE):
                yield chunk
    except OSError as e:
        logger.error("Stream error for task %s: %s", job.task_id, e)
        raise
    finally:
        job.cleanup()


# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------
@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse()


@router.post("/generate", response_model=GenerateResponse, response_model_exclude_none=True, responses=_ERRORS)
async def generate(
    image: UploadFile | None = File(None),
    video: UploadFile | None = File(None),
    prompt: str = Form(""),
    character_orientation: str = Form(""),
    mode: str = Form(""),
    keep_original_sound: str = Form("yes"),
    ctx: AppContext = Depends(get_context),
):
    settings = ctx.settings
    if image is None or video is None or not image.filename or not video.filename:
        raise ValidationFailed("Both image and video files are required")

    stored: list[Path] = []
    try:
        image_path = _new_upload_path(ctx.upload_dir, image.filename)
        stored.append(image_path)
        if await _save_upload(image, image_path, settings.MAX_IMAGE_BYTES) > settings.MAX_IMAGE_BYTES:
            raise ValidationFailed(f"Image file must be less than {settings.MAX_IMAGE_BYTES // MIB}MB")

        video_path = _new_upload_path(ctx.upload_dir, video.filename)
        stored.append(video_path)
        if await _save_upload(video, video_path, settings.MAX_VIDEO_BYTES) > settings.MAX_VIDEO_BYTES:
            raise ValidationFailed(f"Video file must be less than {settings.MAX_VIDEO_BYTES // MIB}MB")

        options = _parse_options(prompt, character_orientation, mode, keep_original_sound)

        if ctx.uploader is None:
            raise UploadError("S3 is not configured")

        logger.info("Uploading image to S3...")
        image_url = await ctx.uploader.upload(image_path, image.filename, image.content_type)
        logger.info("Uploading video to S3...")
        video_url = await ctx.uploader.upload(video_path, video.filename, video.content_type)

        request = GenerationRequest(**options.model_dump(), image_url=image_url, video_url=video_url)
        created = await ctx.kling.create_task(request)
    finally:
        _cleanup(stored)

    return GenerateResponse(**created.model_dump())


@router.get("/task/{task_id}", response_model=TaskStatusResponse, responses=_ERRORS)
async def task_status(task_id: str, ctx: AppContext = Depends(get_context)):
    logger.info("Fetching task status for: %s", task_id)
    return TaskStatusResponse(data=await ctx.kling.get_task(task_id))


@router.get(
    "/download/{task_id}",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"video/mp4": {}}},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        **_ERRORS,
    },
)
async def download(task_id: str, ctx: AppContext = Depends(get_context)):
    job = await ctx.watermarker.render(task_id)
    try:
        size = job.output_path.stat().st_size
    except OSError as e:
        job.cleanup()
        raise WatermarkError(f"Watermarked file is unavailable: {e}") from e

    return StreamingResponse(
        _iter_file(job),
        media_type="video/mp4",
        headers={
            "Content-Length": str(size),
            "Content-Disposition": f'attachment; filename="{job.filename}"',
        },
        # runs even if the iterator was never started
        background=BackgroundTask(job.cleanup),
    )


# -------------------------------------------------------------------
# App factory
# -------------------------------------------------------------------
def _log_banner(settings: Settings) -> None:
    logger.info(
        "EROS UNIVERSE Backend | port=%s env=%s | Kling AI: %s | S3: %s",
        settings.PORT,
        settings.ENVIRONMENT,
        "configured" if settings.kling_configured else "NOT configured",
        "enabled" if settings.S3_ENABLED else "disabled",
    )
    if not settings.kling_configured:
        logger.warning("Kling AI credentials not found; set KLING_ACCESS_KEY and KLING_SECRET_KEY")
    if not Path(settings.LOGO_PATH).is_file():
        logger.warning("Logo not found at %s; /api/download will fail", settings.LOGO_PATH)
    if not settings.result_hosts:
        logger.info("RESULT_URL_ALLOWED_HOSTS is empty; result video URLs are fetched as returned by Kling")


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    if settings is None:
        settings = context.settings if context is not None else get_settings()
    if context is None:
        context = build_context(settings)
    set_level(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _log_banner(settings)
        yield
        logger.info("Shutting down, closing HTTP client")
        await context.aclose()

    app = FastAPI(title="EROS UNIVERSE Backend", version="1.0.0", lifespan=lifespan)
    app.state.context = context

    # exact-match allowlist; requests without an Origin header are not CORS requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    allowed_origins = set(settings.origins)

    # added last, so it wraps CORSMiddleware: foreign origins never reach a route
    @app.middleware("http")
    async def reject_foreign_origins(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin and origin not in allowed_origins:
            logger.warning("Blocked request from origin %s", origin)
            return JSONResponse(status_code=403, content={"success": False, "message": "Not allowed by CORS"})
        return await call_next(request)

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({"success": False, "message": "Invalid request", "details": exc.errors()}),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"success": False, "message": str(exc) or "Internal server error"}
        if settings.is_development:
            body["error"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=body)

    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)


if __name__ == "__main__":
    run()
