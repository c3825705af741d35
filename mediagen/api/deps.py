from typing import Callable

from mediagen.db.session import get_db  # noqa: F401
from mediagen.services.comfy_client import ComfyClient
from mediagen.services.comfy_events import relay_engine_events
from mediagen.services.textgen_client import TextGenClient


EngineFactory = Callable[[str | None], ComfyClient]
TextGenFactory = Callable[[str | None], TextGenClient]


def get_engine_factory() -> EngineFactory:
    return ComfyClient


def get_textgen_factory() -> TextGenFactory:
    return TextGenClient


def get_event_relay():
    return relay_engine_events
