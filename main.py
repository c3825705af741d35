import uvicorn

from mediagen.core.config import settings
from mediagen.main import app


if __name__ == '__main__':
    uvicorn.run(app, host='0.0.0.0', port=8000, log_level=settings.LOG_LEVEL.lower())
