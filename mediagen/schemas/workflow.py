from enum import Enum
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, Field

from mediagen.schemas.base import CamelModel
from mediagen.schemas.generation import GenerationMode


class MappingRole(str, Enum):
    PROMPT = 'prompt'
    NEGATIVE_PROMPT = 'negative_prompt'
    WIDTH = 'width'
    HEIGHT = 'height'
    STEPS = 'steps'
    CFG = 'cfg'
    SEED = 'seed'
    CHECKPOINT = 'checkpoint'
    IMAGE_UPLOAD = 'image_upload'
    SAMPLER = 'sampler'
    SCHEDULER = 'scheduler'
    CUSTOM = 'custom'


class FieldMapping(CamelModel):
    node_id: str
    field_name: str
    # stored workflows written by the old UI call this "uiType"
    role: MappingRole = Field(validation_alias=AliasChoices('role', 'uiType'))
    label: str = ''
    default_value: Any = None
    description: str | None = None


class WorkflowCreate(CamelModel):
    name: str
    description: str = ''
    category: GenerationMode
    # validated by validate_api_format for a readable message
    api_json: Any
    input_mappings: list[FieldMapping]
    output_node_id: str = ''


class WorkflowUpdate(CamelModel):
    name: str | None = None
    description: str | None = None
    category: GenerationMode | None = None
    input_mappings: list[FieldMapping] | None = None
    output_node_id: str | None = None


class WorkflowOut(CamelModel):
    id: str
    name: str
    description: str
    category: str
    api_json: dict[str, Any]
    input_mappings: list[FieldMapping]
    output_node_id: str
    created_at: datetime
    updated_at: datetime
