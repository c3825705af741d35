from loguru import logger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from mediagen.core.config import settings
from mediagen.core.errors import install_exception_handlers
from mediagen.core.logging import setup_logging
from mediagen.db.session import init_db

from mediagen.api.engine import router as engine_router
from mediagen.api.generations import router as generations_router
from mediagen.api.textgen import router as textgen_router
from mediagen.api.workflows import router as workflows_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # STARTUP
    await init_db()
    logger.info(f'Database ready at {settings.DATABASE_URL}')

    yield

    # SHUTDOWN
    logger.info('Application stopped')


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
        debug=settings.DEBUG
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    install_exception_handlers(app)

    @app.get('/health', tags=['system'])
    def health_check():
        return {'status': 'Ok'}

    app.include_router(engine_router, prefix=settings.API_PREFIX)
    app.include_router(workflows_router, prefix=settings.API_PREFIX)
    app.include_router(generations_router, prefix=settings.API_PREFIX)
    app.include_router(textgen_router, prefix=settings.API_PREFIX)

    logger.info('Application started')
    return app


app = create_app()
