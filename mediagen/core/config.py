import os
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_PATH = os.path.dirname(__file__)


class Settings(BaseSettings):
    PROJECT_NAME: str = 'mediagen'
    API_PREFIX: str = '/api'

    DEBUG: bool = False
    LOG_LEVEL: str = 'INFO'

    DATABASE_URL: str = 'sqlite+aiosqlite:///./data/mediagen.db'
    CACHE_ROOT: str = './data/outputs'

    # per-session overridable defaults
    ENGINE_URL: str = 'http://localhost:8188'
    TEXTGEN_URL: str = 'http://localhost:1234'

    # seconds
    ENGINE_STATUS_TIMEOUT: float = 5.0
    ENGINE_HISTORY_TIMEOUT: float = 10.0
    ENGINE_CATALOG_TIMEOUT: float = 15.0
    ENGINE_SUBMIT_TIMEOUT: float = 30.0
    ENGINE_FILE_TIMEOUT: float = 60.0
    TEXTGEN_TIMEOUT: float = 60.0

    KEEPALIVE_INTERVAL: float = 15.0
    STREAM_CLOSE_DELAY: float = 0.5

    POLL_INTERVAL: float = 3.0
    POLL_START_DELAY: float = 3.0
    STALL_THRESHOLD_IMAGE: float = 5 * 60.0
    STALL_THRESHOLD_VIDEO: float = 15 * 60.0
    POLL_MAX_CONSECUTIVE_FAILURES: int = 20

    CORS_ORIGINS: list[str] = ['http://localhost:3000', 'http://127.0.0.1:3000']

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore'
    )


settings = Settings()
