from enum import Enum
from datetime import datetime
from typing import Any, Literal

from pydantic import ConfigDict, Field

from mediagen.schemas.base import CamelModel


class GenerationMode(str, Enum):
    TEXT_TO_IMAGE = 'text-to-image'
    IMAGE_TO_IMAGE = 'image-to-image'
    TEXT_TO_VIDEO = 'text-to-video'
    IMAGE_TO_VIDEO = 'image-to-video'
    TEXT_TO_MUSIC = 'text-to-music'
    MUSIC_TO_MUSIC = 'music-to-music'

    @property
    def is_image_class(self) -> bool:
        return self in (GenerationMode.TEXT_TO_IMAGE, GenerationMode.IMAGE_TO_IMAGE)


class JobStatus(str, Enum):
    IDLE = 'idle'
    ENHANCING = 'enhancing'
    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'
    ABANDONED = 'abandoned'

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({JobStatus.ENHANCING, JobStatus.QUEUED, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.ABANDONED})


class JobParams(CamelModel):
    """
    User adjustable values. Anything beyond the five core fields is kept as
    an extra keyed by the graph field name it targets (e.g. ``ckpt_name``).
    """
    model_config = ConfigDict(extra='allow')

    width: int = 1024
    height: int = 1024
    steps: int = 20
    cfg_scale: float = 7.0
    # -1 => randomize on submission
    seed: int = -1

    def lookup(self, key: str, default: Any = None) -> Any:
        extra = self.model_extra or {}
        if key in extra:
            value = extra[key]
            return default if value is None else value

        for name, field in type(self).model_fields.items():
            if key in (name, field.alias):
                return getattr(self, name)
        return default


class OutputFile(CamelModel):
    filename: str
    subfolder: str = ''
    type: Literal['output', 'temp'] = 'output'
    media_type: Literal['image', 'video'] = 'image'


class GenerationSubmit(CamelModel):
    workflow_id: str | None = None
    mode: GenerationMode | None = None
    prompt: str | None = None
    negative_prompt: str | None = None
    enhanced_prompt: str | None = None
    params: JobParams = Field(default_factory=JobParams)
    input_image_filename: str | None = None
    client_id: str | None = None
    engine_base_url: str | None = None


class SubmitResponse(CamelModel):
    prompt_id: str
    generation_id: str


class HistoryResult(CamelModel):
    completed: bool = False
    outputs: list[OutputFile] = Field(default_factory=list)
    status: str | None = None
    error: str | None = None


class GenerationOut(CamelModel):
    id: str
    mode: str
    workflow_id: str
    original_prompt: str
    enhanced_prompt: str | None = None
    negative_prompt: str = ''
    params: dict[str, Any]
    input_image_path: str | None = None
    output_files: list[OutputFile] = Field(default_factory=list)
    status: str
    comfy_prompt_id: str | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class GenerationUpdate(CamelModel):
    status: JobStatus | None = None
    comfy_prompt_id: str | None = None
    enhanced_prompt: str | None = None
    output_files: list[OutputFile] | None = None
    error: str | None = None
    completed_at: datetime | None = None
    # where to fetch outputs from when eager caching after completion
    engine_base_url: str | None = None


class GenerationList(CamelModel):
    generations: list[GenerationOut]
    total: int
    limit: int
    offset: int
