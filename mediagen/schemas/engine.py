from typing import Any

from pydantic import Field

from mediagen.schemas.base import CamelModel


class PromptQueued(CamelModel):
    prompt_id: str
    number: int | None = None
    node_errors: dict[str, Any] = Field(default_factory=dict)


class UploadedFile(CamelModel):
    name: str
    subfolder: str = ''
    type: str = 'input'

    @property
    def stored_name(self) -> str:
        """Value to place into a LoadImage ``image`` input."""
        if self.subfolder:
            return f'{self.subfolder}/{self.name}'
        return self.name


class InterruptRequest(CamelModel):
    engine_base_url: str | None = None


class ConnectionStatus(CamelModel):
    connected: bool
    latency: int | None = None
    error: str | None = None
    system: dict[str, Any] | None = None
    models: list[str] | None = None


class CheckpointList(CamelModel):
    checkpoints: list[str] = Field(default_factory=list)
    error: str | None = None
