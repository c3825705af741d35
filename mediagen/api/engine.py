import time

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from mediagen.api.deps import EngineFactory, get_db, get_engine_factory, get_event_relay
from mediagen.core.errors import EngineRejected, EngineUnavailable, MediagenError, ValidationError
from mediagen.schemas.engine import CheckpointList, ConnectionStatus, InterruptRequest
from mediagen.schemas.generation import GenerationSubmit, HistoryResult, SubmitResponse
from mediagen.services import file_cache
from mediagen.services.comfy_client import extract_checkpoints
from mediagen.services.history import interpret_history
from mediagen.services.job_service import submit_generation


router = APIRouter(prefix='/engine', tags=['engine'])

SSE_HEADERS = {
    'Cache-Control': 'no-cache, no-transform',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


@router.post('/prompt', response_model=SubmitResponse, response_model_by_alias=True)
async def queue_prompt(
    data: GenerationSubmit,
    db: AsyncSession = Depends(get_db),
    engine: EngineFactory = Depends(get_engine_factory)
):
    return await submit_generation(db=db, data=data, client=engine(data.engine_base_url))


@router.get('/history/{prompt_id}', response_model=HistoryResult, response_model_exclude_none=True)
async def get_history(
    prompt_id: str,
    engine_base_url: str | None = Query(None, alias='engineBaseUrl'),
    engine: EngineFactory = Depends(get_engine_factory)
):
    entry = await engine(engine_base_url).get_history(prompt_id)
    result = interpret_history(entry)
    logger.debug(
        f'[history/{prompt_id}] completed={result.completed} '
        f'status={result.status} outputs={len(result.outputs)}'
    )
    return result


@router.get('/events')
async def stream_events(
    request: Request,
    engine_base_url: str | None = Query(None, alias='engineBaseUrl'),
    client_id: str = Query('', alias='clientId'),
    prompt_id: str = Query('', alias='promptId'),
    relay=Depends(get_event_relay)
):
    events = relay(
        engine_base_url,
        client_id,
        prompt_id,
        is_disconnected=request.is_disconnected
    )
    return StreamingResponse(events, media_type='text/event-stream', headers=SSE_HEADERS)


@router.post('/interrupt')
async def interrupt(
    data: InterruptRequest,
    engine: EngineFactory = Depends(get_engine_factory)
):
    await engine(data.engine_base_url).interrupt()
    return {'success': True}


@router.post('/upload')
async def upload_image(
    image: UploadFile | None = File(None),
    engine_base_url: str | None = Form(None, alias='engineBaseUrl'),
    engine: EngineFactory = Depends(get_engine_factory)
):
    if image is None:
        raise ValidationError('image file is required')

    content = await image.read()
    uploaded = await engine(engine_base_url).upload_image(content, image.filename or 'upload.png', overwrite=True)
    return {
        'name': uploaded.name,
        'subfolder': uploaded.subfolder,
        'type': uploaded.type,
        'storedName': uploaded.stored_name,
    }


@router.get('/view')
async def view_file(
    filename: str | None = Query(None),
    subfolder: str | None = Query(None),
    file_type: str | None = Query(None, alias='type'),
    engine_base_url: str | None = Query(None, alias='engineBaseUrl'),
    generation_id: str | None = Query(None, alias='generationId'),
    engine: EngineFactory = Depends(get_engine_factory)
):
    if not filename:
        raise ValidationError('filename is required')

    headers = {'Cache-Control': 'public, max-age=31536000, immutable'}

    if generation_id:
        cached = file_cache.read_cached_file(generation_id, filename)
        if cached is not None:
            return Response(content=cached, media_type=file_cache.content_type_for(filename), headers=headers)

    try:
        content, content_type = await engine(engine_base_url).view_file(filename, subfolder, file_type)
    except MediagenError:
        if generation_id:
            cached = file_cache.read_cached_file(generation_id, filename)
            if cached is not None:
                return Response(content=cached, media_type=file_cache.content_type_for(filename), headers=headers)
        raise

    if generation_id:
        try:
            file_cache.write_cached_file(generation_id, filename, content)
        except OSError as e:
            logger.warning(f'[file-cache] could not cache {filename} for {generation_id}: {e}')

    return Response(content=content, media_type=content_type, headers=headers)


@router.get('/status', response_model=ConnectionStatus, response_model_exclude_none=True)
async def engine_status(
    url: str | None = Query(None),
    engine: EngineFactory = Depends(get_engine_factory)
):
    client = engine(url)
    started = time.monotonic()
    try:
        stats = await client.get_system_stats()
    except EngineRejected as e:
        body = ConnectionStatus(connected=False, error=f'HTTP {e.engine_status}')
        return JSONResponse(body.model_dump(by_alias=True, exclude_none=True), status_code=502)
    except EngineUnavailable:
        body = ConnectionStatus(connected=False, error='ComfyUI is not reachable')
        return JSONResponse(body.model_dump(by_alias=True, exclude_none=True), status_code=503)

    latency = int((time.monotonic() - started) * 1000)
    return ConnectionStatus(connected=True, latency=latency, system=stats)


@router.get('/models')
async def object_info(
    engine_base_url: str | None = Query(None, alias='engineBaseUrl'),
    engine: EngineFactory = Depends(get_engine_factory)
):
    return await engine(engine_base_url).get_object_info()


@router.get('/checkpoints', response_model=CheckpointList, response_model_exclude_none=True)
async def checkpoints(
    engine_base_url: str | None = Query(None, alias='engineBaseUrl'),
    engine: EngineFactory = Depends(get_engine_factory)
):
    try:
        object_info = await engine(engine_base_url).get_object_info()
    except MediagenError as e:
        body = CheckpointList(checkpoints=[], error=e.message)
        return JSONResponse(body.model_dump(by_alias=True), status_code=e.status_code)
    return CheckpointList(checkpoints=extract_checkpoints(object_info))
