from pydantic import Field

from mediagen.schemas.base import CamelModel
from mediagen.schemas.generation import GenerationMode


class EnhanceRequest(CamelModel):
    prompt: str | None = None
    mode: GenerationMode | None = None
    textgen_url: str | None = None
    model: str | None = None


class EnhanceResponse(CamelModel):
    enhanced_prompt: str | None = None
    error: str | None = None


class ExplainRequest(CamelModel):
    workflow_summary: str | None = None
    textgen_url: str | None = None
    model: str | None = None


class NodeGroup(CamelModel):
    group_name: str = ''
    explanation: str = ''


class KeyParameter(CamelModel):
    name: str = ''
    tip: str = ''


class WorkflowExplanation(CamelModel):
    summary: str = ''
    node_groups: list[NodeGroup] = Field(default_factory=list)
    key_parameters: list[KeyParameter] = Field(default_factory=list)
    tips: list[str] = Field(default_factory=list)


class ExplainResponse(CamelModel):
    explanation: WorkflowExplanation | None = None
    error: str | None = None
