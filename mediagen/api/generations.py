from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.api.deps import EngineFactory, get_db, get_engine_factory
from mediagen.core.errors import NotFound
from mediagen.schemas.generation import (
    GenerationList,
    GenerationOut,
    GenerationUpdate,
    JobStatus,
    OutputFile,
)
from mediagen.services import file_cache, generation_store


router = APIRouter(prefix='/generations', tags=['generations'])


@router.get('', response_model=GenerationList)
async def list_generations(
    mode: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    generations = await generation_store.list_generations(db=db, mode=mode, limit=limit, offset=offset)
    total = await generation_store.count_generations(db=db, mode=mode)
    return GenerationList(
        generations=[GenerationOut.model_validate(g) for g in generations],
        total=total,
        limit=limit,
        offset=offset
    )


@router.get('/{generation_id}', response_model=GenerationOut)
async def get_generation(
    generation_id: str,
    db: AsyncSession = Depends(get_db)
):
    generation = await generation_store.get_generation(db=db, generation_id=generation_id)
    if not generation:
        raise NotFound('Generation not found')
    return generation


@router.patch('/{generation_id}', response_model=GenerationOut)
async def update_generation(
    generation_id: str,
    data: GenerationUpdate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    engine: EngineFactory = Depends(get_engine_factory)
):
    changes = data.model_dump(exclude_unset=True)
    engine_base_url = changes.pop('engine_base_url', None)
    if 'output_files' in changes:
        changes['output_files'] = data.output_files

    generation = await generation_store.update_generation(
        db=db,
        generation_id=generation_id,
        changes=changes
    )
    if not generation:
        raise NotFound('Generation not found')

    if data.status == JobStatus.COMPLETED and data.output_files and generation.status == JobStatus.COMPLETED.value:
        outputs = [OutputFile.model_validate(f) for f in generation.output_files or []]
        background_tasks.add_task(
            file_cache.eager_cache_outputs,
            generation.id,
            outputs,
            client=engine(engine_base_url)
        )

    return generation


@router.delete('/{generation_id}')
async def delete_generation(
    generation_id: str,
    db: AsyncSession = Depends(get_db)
):
    deleted = await generation_store.delete_generation(db=db, generation_id=generation_id)
    if not deleted:
        raise NotFound('Generation not found')
    return {'success': True}
