"""
Pydantic models and enums for the generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Job kind / status ───────────────────────────────────────────────────────

class JobKind(str, Enum):
    SINGLE_IMAGE = "single-image"
    STORY_MULTI_SHOT = "story-multi-shot"
    VIDEO_TO_VIDEO = "video-to-video"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# Credit action billed for each job kind
KIND_ACTIONS = {
    JobKind.SINGLE_IMAGE: "image.gen",
    JobKind.STORY_MULTI_SHOT: "story.gen",
    JobKind.VIDEO_TO_VIDEO: "video.gen",
}


# ── Shots ───────────────────────────────────────────────────────────────────

class Shot(BaseModel):
    name: str
    add: str = ""


DEFAULT_SHOTLIST = [
    Shot(name="establishing", add="wide establishing shot, subject small in frame"),
    Shot(name="approach", add="medium shot, subject moving toward camera"),
    Shot(name="closeup", add="close-up, expressive detail, shallow depth of field"),
    Shot(name="finale", add="dramatic hero shot, low angle, cinematic lighting"),
]


class GenerationParams(BaseModel):
    strength: float = Field(0.45, ge=0.0, le=1.0)
    steps: int = Field(30, ge=1, le=150)
    guidance: float = Field(7.5, ge=0.0, le=30.0)
    seed: Optional[int] = None
    negative: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


# ── Job ─────────────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str
    user_id: str
    kind: JobKind
    source_url: str
    prompt: str = ""
    negative_prompt: str = ""
    preset_key: Optional[str] = None
    params: GenerationParams = Field(default_factory=GenerationParams)
    shots: list[Shot] = Field(default_factory=list)
    width: int = 1024
    height: int = 1024
    fps: int = 24
    cost: int = 0
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    provider: Optional[str] = None
    provider_params: dict[str, Any] = Field(default_factory=dict)
    provider_job_id: Optional[str] = None
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        return cls.model_validate(row)


class JobProjection(BaseModel):
    job_id: str
    run_id: str
    kind: JobKind
    status: JobStatus
    progress: int = 0
    provider: Optional[str] = None
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def of(cls, job: Job) -> "JobProjection":
        return cls(
            job_id=job.id,
            run_id=job.run_id,
            kind=job.kind,
            status=job.status,
            progress=job.progress,
            provider=job.provider,
            result_url=job.result_url,
            error_code=job.error_code,
            error=job.error,
        )


# ── API request / response models ───────────────────────────────────────────

class SubmitRequest(BaseModel):
    run_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1, max_length=128)
    user_id: str = Field(..., min_length=1)
    source_url: str = Field(..., min_length=1)
    prompt: str = ""
    preset_key: Optional[str] = None
    kind: JobKind = JobKind.SINGLE_IMAGE
    params: GenerationParams = Field(default_factory=GenerationParams)
    shots: list[Shot] = Field(default_factory=list)
    width: int = Field(1024, ge=64, le=4096)
    height: int = Field(1024, ge=64, le=4096)
    fps: int = Field(24, ge=1, le=60)

    @field_validator("source_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("source_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _prompt_or_preset(self) -> "SubmitRequest":
        if not self.prompt.strip() and not self.preset_key:
            raise ValueError("either prompt or preset_key is required")
        if self.kind == JobKind.STORY_MULTI_SHOT and not self.shots:
            self.shots = [shot.model_copy() for shot in DEFAULT_SHOTLIST]
        return self


class SubmitResponse(BaseModel):
    job_id: str
    run_id: str
    status: JobStatus
    duplicate: bool = False
    result_url: Optional[str] = None


class ReserveRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    request_id: str = Field(default_factory=lambda: str(uuid4()))
    action: str = "image.gen"
    cost: int = 1


class FinalizeRequest(BaseModel):
    request_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    disposition: str = Field("commit", pattern="^(commit|refund)$")
    amount: Optional[int] = None
