import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.models.generation import Generation
from mediagen.schemas.generation import JobParams, JobStatus, OutputFile, TERMINAL_STATUSES
from mediagen.services import file_cache


# fields a terminal row never accepts again
TERMINAL_FIELDS = frozenset({'status', 'output_files', 'error', 'completed_at'})


def _dump_outputs(output_files: Sequence[OutputFile | Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        OutputFile.model_validate(f).model_dump(by_alias=True)
        for f in output_files
    ]


def is_terminal(generation: Generation) -> bool:
    return generation.status in {s.value for s in TERMINAL_STATUSES}


async def create_generation(
        *,
        db: AsyncSession,
        mode: str,
        workflow_id: str,
        original_prompt: str,
        params: JobParams,
        enhanced_prompt: Optional[str] = None,
        negative_prompt: Optional[str] = None,
        input_image_path: Optional[str] = None,
        status: JobStatus = JobStatus.IDLE
) -> Generation:
    generation = Generation(
        id=uuid.uuid4().hex,
        mode=mode,
        workflow_id=workflow_id,
        original_prompt=original_prompt,
        enhanced_prompt=enhanced_prompt or None,
        negative_prompt=negative_prompt or '',
        params=params.model_dump(by_alias=True),
        input_image_path=input_image_path or None,
        output_files=[],
        status=status.value,
        created_at=datetime.now()
    )
    db.add(generation)
    await db.commit()
    await db.refresh(generation)
    return generation


async def get_generation(*, db: AsyncSession, generation_id: str) -> Optional[Generation]:
    return await db.get(Generation, generation_id)


async def list_generations(
        *,
        db: AsyncSession,
        mode: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
) -> List[Generation]:
    stmt = select(Generation)
    if mode:
        stmt = stmt.where(Generation.mode == mode)
    stmt = stmt.order_by(Generation.created_at.desc()).limit(limit).offset(offset)

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_generations(*, db: AsyncSession, mode: Optional[str] = None) -> int:
    stmt = select(func.count()).select_from(Generation)
    if mode:
        stmt = stmt.where(Generation.mode == mode)
    return int(await db.scalar(stmt) or 0)


async def update_generation(
        *,
        db: AsyncSession,
        generation_id: str,
        changes: Dict[str, Any]
) -> Optional[Generation]:
    """
    Partial update; keys absent from ``changes`` are left untouched.

    Once a row is terminal its status, outputs, error and completion time are
    frozen: a second completion signal is dropped instead of overwriting the
    first one.
    """
    generation = await db.get(Generation, generation_id)
    if not generation:
        return None

    if is_terminal(generation):
        dropped = TERMINAL_FIELDS.intersection(changes)
        if dropped:
            logger.debug(
                f'Generation {generation_id} already {generation.status}; '
                f'ignoring {sorted(dropped)}'
            )
        changes = {k: v for k, v in changes.items() if k not in TERMINAL_FIELDS}

    for key, value in changes.items():
        if key == 'status' and isinstance(value, JobStatus):
            value = value.value
        elif key == 'output_files' and value is not None:
            value = _dump_outputs(value)
        setattr(generation, key, value)

    await db.commit()
    await db.refresh(generation)
    return generation


async def mark_terminal(
        *,
        db: AsyncSession,
        generation_id: str,
        status: JobStatus,
        output_files: Optional[Sequence[OutputFile]] = None,
        error: Optional[str] = None
) -> bool:
    """
    Moves the row to a terminal status once. Returns False when the row is
    missing or was already terminal.
    """
    if not status.is_terminal:
        raise ValueError(f'{status.value} is not a terminal status')

    generation = await db.get(Generation, generation_id)
    if not generation or is_terminal(generation):
        return False

    changes: Dict[str, Any] = {'status': status, 'completed_at': datetime.now()}
    if output_files is not None:
        changes['output_files'] = output_files
    if error is not None:
        changes['error'] = error

    await update_generation(db=db, generation_id=generation_id, changes=changes)
    return True


async def delete_generation(
        *,
        db: AsyncSession,
        generation_id: str,
        cache_root: Optional[str] = None
) -> bool:
    generation = await db.get(Generation, generation_id)
    if not generation:
        return False

    await db.delete(generation)
    await db.commit()

    # local copies only; files on the engine stay where they are
    file_cache.delete_cached_files(generation_id, cache_root)
    return True
