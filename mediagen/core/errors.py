from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException


class MediagenError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MediagenError):
    """Malformed or incomplete request, rejected before any engine call."""
    status_code = 400


class NotFound(MediagenError):
    status_code = 404


class EngineRejected(MediagenError):
    """The engine answered with a non-2xx status."""
    status_code = 502

    def __init__(self, status_code: int, body: str, operation: str = 'prompt'):
        super().__init__(f'ComfyUI {operation} error {status_code}: {body}')
        self.engine_status = status_code
        self.body = body


class EngineUnavailable(MediagenError):
    """Timeout or transport failure while reaching the engine."""
    status_code = 503


class EngineExecutionError(MediagenError):
    """The engine accepted the job and then reported a node failure."""

    def __init__(
            self,
            exception_message: str | None = None,
            node_id: str | None = None,
            node_type: str | None = None
    ):
        self.exception_message = exception_message
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(describe_execution_error(exception_message, node_id, node_type))

    @property
    def detail(self) -> str | None:
        """Engine message with the node suffix, as stored on the record."""
        if not self.exception_message:
            return None
        return f'{self.exception_message}{node_context(self.node_id, self.node_type)}'


class EngineInterrupted(MediagenError):
    def __init__(self, message: str = 'Generation was interrupted on the ComfyUI server'):
        super().__init__(message)


class TextGenUnavailable(MediagenError):
    status_code = 503


def node_context(node_id: str | None, node_type: str | None) -> str:
    if node_type:
        return f' in "{node_type}" (node {node_id})'
    if node_id:
        return f' in node {node_id}'
    return ''


def describe_execution_error(
        exception_message: str | None,
        node_id: str | None,
        node_type: str | None
) -> str:
    node_part = node_context(node_id, node_type)
    if exception_message:
        return f'ComfyUI error{node_part}: {exception_message}'
    return f'ComfyUI execution failed{node_part}'


def install_exception_handlers(app):
    @app.exception_handler(MediagenError)
    async def mediagen_error_handler(request: Request, exc: MediagenError):
        if exc.status_code >= 500:
            logger.warning(f'{request.method} {request.url.path} failed: {exc.message}')
        return JSONResponse({'error': exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        missing = [
            '.'.join(str(p) for p in err.get('loc', ())[1:])
            for err in exc.errors()
        ]
        return JSONResponse(
            {'error': f'Invalid request: {", ".join(m for m in missing if m) or "malformed body"}'},
            status_code=400
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({'error': exc.detail}, status_code=exc.status_code)
