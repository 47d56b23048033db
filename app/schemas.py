# app/schemas.py
# Request/response models for the API and for the Kling motion-control calls

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class CharacterOrientation(str, Enum):
    image = "image"
    video = "video"


class Mode(str, Enum):
    std = "std"
    pro = "pro"


class KeepOriginalSound(str, Enum):
    yes = "yes"
    no = "no"


# Validated multipart form for POST /api/generate
class GenerationOptions(BaseModel):
    prompt: str = ""
    character_orientation: CharacterOrientation
    mode: Mode
    keep_original_sound: KeepOriginalSound = KeepOriginalSound.yes


# Body sent to Kling once both files are staged in the object store
class GenerationRequest(GenerationOptions):
    image_url: str
    video_url: str

    def to_payload(self) -> dict:
        payload = {
            "image_url": self.image_url,
            "video_url": self.video_url,
            "character_orientation": self.character_orientation.value,
            "mode": self.mode.value,
            "keep_original_sound": self.keep_original_sound.value,
        }
        if self.prompt:
            payload["prompt"] = self.prompt
        return payload


class TaskCreated(BaseModel):
    task_id: str
    task_status: Optional[str] = None
    created_at: Optional[Any] = None
    external_task_id: Optional[str] = None


class GenerateResponse(TaskCreated):
    success: bool = True
    message: str = "Video generation task created successfully"


class TaskStatusResponse(BaseModel):
    success: bool = True
    data: Any = None


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str = "EROS UNIVERSE Backend is running"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    code: Optional[Any] = None
    details: Optional[Any] = None
