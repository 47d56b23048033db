# app/config.py
from pathlib import Path
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent

DEFAULT_ORIGINS = (
    "https://celebrated-heliotrope-1bcaaf.netlify.app,"
    "http://localhost:3000,"
    "http://localhost:5500,"
    "http://127.0.0.1:5500"
)

MIB = 1024 * 1024


class Settings(BaseSettings):
    # Server
    PORT: int = 3000
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # CORS (exact match, comma separated)
    ALLOWED_ORIGINS: str = DEFAULT_ORIGINS

    # Kling AI
    KLING_API_BASE_URL: str = "https://api.klingai.com"
    KLING_ACCESS_KEY: str | None = None
    KLING_SECRET_KEY: str | None = None
    KLING_CREATE_TIMEOUT: float = 60
    KLING_STATUS_TIMEOUT: float = 30
    TOKEN_TTL: int = 1800
    TOKEN_SKEW: int = 5

    # S3-compatible object storage
    S3_ENABLED: bool = False
    S3_ENDPOINT: str | None = None
    S3_REGION: str = "us-east-1"  # required by boto3, ignored by most custom endpoints
    S3_BUCKET: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_URL_EXPIRATION: int = 86400
    S3_KEY_PREFIX: str = "kling-uploads"

    # Uploads
    UPLOAD_DIR: Path = BASE_DIR / "uploads"
    MAX_IMAGE_BYTES: int = 10 * MIB
    MAX_VIDEO_BYTES: int = 100 * MIB

    # Watermark
    LOGO_PATH: Path = BASE_DIR / "assets" / "logo.png"
    FFMPEG_BIN: str = "ffmpeg"
    FFMPEG_TIMEOUT: float = 300
    FFMPEG_MAX_OUTPUT_BYTES: int = 10 * MIB
    RESULT_DOWNLOAD_TIMEOUT: float = 120
    LOGO_MAX_WIDTH: int = 160
    LOGO_MAX_HEIGHT: int = 80
    LOGO_OPACITY: float = 0.85
    LOGO_MARGIN: int = 20
    DOWNLOAD_FILENAME_PREFIX: str = "eros-universe"
    # Empty = trust whatever URL Kling returns for the finished video
    RESULT_URL_ALLOWED_HOSTS: str = ""

    # pydantic v2 settings
    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        extra="ignore",
        case_sensitive=False,
    )

    # relative paths in .env are relative to the project root, not the cwd
    @field_validator("UPLOAD_DIR", "LOGO_PATH")
    @classmethod
    def _anchor_to_base_dir(cls, value: Path) -> Path:
        return value if value.is_absolute() else BASE_DIR / value

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def result_hosts(self) -> set[str]:
        return {h.strip().lower() for h in self.RESULT_URL_ALLOWED_HOSTS.split(",") if h.strip()}

    @property
    def kling_configured(self) -> bool:
        return bool((self.KLING_ACCESS_KEY or "").strip() and (self.KLING_SECRET_KEY or "").strip())

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


def get_settings() -> Settings:
    return Settings()
