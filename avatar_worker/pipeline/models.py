"""
Pydantic models and enums for the avatar video pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ── Task Stage ───────────────────────────────────────────────────────────────

class TaskStage(str, Enum):
    UPLOADING_ASSETS = "UPLOADING_ASSETS"
    RECOGNITION_SUBMITTED = "RECOGNITION_SUBMITTED"
    RECOGNITION_PROCESSING = "RECOGNITION_PROCESSING"
    RECOGNITION_COMPLETED = "RECOGNITION_COMPLETED"
    AWAITING_SUBJECT_SELECTION = "AWAITING_SUBJECT_SELECTION"
    GENERATION_SUBMITTED = "GENERATION_SUBMITTED"
    GENERATION_PROCESSING = "GENERATION_PROCESSING"
    GENERATION_COMPLETED = "GENERATION_COMPLETED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    FAILED = "FAILED"


TERMINAL_STAGES = frozenset({
    TaskStage.GENERATION_COMPLETED,
    TaskStage.UPLOAD_FAILED,
    TaskStage.FAILED,
})

FAILED_STAGES = frozenset({TaskStage.UPLOAD_FAILED, TaskStage.FAILED})

# Forward edges of the pipeline. Every non-terminal stage may also fail.
STAGE_TRANSITIONS: dict[TaskStage, frozenset] = {
    TaskStage.UPLOADING_ASSETS: frozenset({TaskStage.RECOGNITION_SUBMITTED}),
    TaskStage.RECOGNITION_SUBMITTED: frozenset({TaskStage.RECOGNITION_PROCESSING}),
    TaskStage.RECOGNITION_PROCESSING: frozenset({TaskStage.RECOGNITION_COMPLETED}),
    TaskStage.RECOGNITION_COMPLETED: frozenset({
        TaskStage.AWAITING_SUBJECT_SELECTION,
        TaskStage.GENERATION_SUBMITTED,
    }),
    TaskStage.AWAITING_SUBJECT_SELECTION: frozenset({TaskStage.GENERATION_SUBMITTED}),
    TaskStage.GENERATION_SUBMITTED: frozenset({TaskStage.GENERATION_PROCESSING}),
    TaskStage.GENERATION_PROCESSING: frozenset({TaskStage.GENERATION_COMPLETED}),
}

# Stages at which the provider has already confirmed a usable subject.
RECOGNITION_CONFIRMED_STAGES = frozenset({
    TaskStage.RECOGNITION_COMPLETED,
    TaskStage.AWAITING_SUBJECT_SELECTION,
    TaskStage.GENERATION_SUBMITTED,
    TaskStage.GENERATION_PROCESSING,
})


def is_terminal(stage: TaskStage) -> bool:
    return stage in TERMINAL_STAGES


def can_transition(current: TaskStage, target: TaskStage) -> bool:
    """True when ``target`` is a legal next stage of ``current``."""
    if is_terminal(current):
        return False
    if target in FAILED_STAGES:
        return True
    return target in STAGE_TRANSITIONS.get(current, frozenset())


# ── Failure Kind ─────────────────────────────────────────────────────────────

class FailureKind(str, Enum):
    UPLOAD = "UPLOAD"
    NO_SUBJECT = "NO_SUBJECT"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH = "AUTH"
    PROVIDER = "PROVIDER"
    REMOTE_NOT_FOUND = "REMOTE_NOT_FOUND"
    REMOTE_EXPIRED = "REMOTE_EXPIRED"
    POLLING_TIMEOUT = "POLLING_TIMEOUT"
    CANCELLED = "CANCELLED"
    INTERRUPTED = "INTERRUPTED"
    UNKNOWN = "UNKNOWN"


# A provider job reference recorded before one of these failures is dead.
DEAD_REFERENCE_KINDS = frozenset({
    FailureKind.REMOTE_NOT_FOUND,
    FailureKind.REMOTE_EXPIRED,
})


# ── Task ─────────────────────────────────────────────────────────────────────

class AvatarTask(BaseModel):
    id: str
    user_id: str
    shot_id: Optional[str] = None
    name: str = ""
    image_url: str
    audio_url: str
    duration_seconds: Optional[float] = None
    prompt: Optional[str] = None
    seed: Optional[int] = None
    pe_fast_mode: bool = False
    enable_multi_subject: bool = False
    stage: TaskStage = TaskStage.UPLOADING_ASSETS
    recognition_task_id: Optional[str] = None
    mask_urls: Optional[list[str]] = None
    selected_mask_index: Optional[int] = None
    generation_task_id: Optional[str] = None
    result_video_url: Optional[str] = None
    aigc_meta_tagged: Optional[bool] = None
    error_message: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    failed_stage: Optional[TaskStage] = None
    processing: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def selected_mask_url(self) -> Optional[str]:
        if self.selected_mask_index is None or not self.mask_urls:
            return None
        if 0 <= self.selected_mask_index < len(self.mask_urls):
            return self.mask_urls[self.selected_mask_index]
        return None


# ── API Request Models ───────────────────────────────────────────────────────

class CreateTaskRequest(BaseModel):
    """Inputs for a new avatar video task."""
    name: str = Field(..., min_length=1, max_length=100)
    image_url: str = Field(..., min_length=1, description="Public URL or local asset path")
    audio_url: str = Field(..., min_length=1, description="Public URL or local asset path")
    shot_id: Optional[str] = Field(None, description="Storyboard shot to keep in sync")
    prompt: Optional[str] = Field(None, max_length=500)
    seed: Optional[int] = Field(None, ge=-1, le=999999999)
    pe_fast_mode: bool = False
    enable_multi_subject: bool = False


class SelectSubjectRequest(BaseModel):
    mask_index: int = Field(..., ge=0)


class AudioDurationRequest(BaseModel):
    audio_url: str = Field(..., min_length=1)


# ── API Response Models ──────────────────────────────────────────────────────

class TaskListResponse(BaseModel):
    tasks: list[AvatarTask] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0


class AudioDurationResponse(BaseModel):
    is_valid: bool
    duration: Optional[float] = None
    max_duration: float
