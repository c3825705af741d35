import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.core.errors import ValidationError
from mediagen.models.workflow import Workflow
from mediagen.schemas.workflow import FieldMapping, WorkflowCreate, WorkflowUpdate
from mediagen.services.graph_filler import validate_api_format, validate_mappings


def _dump_mappings(mappings: List[FieldMapping]) -> list:
    return [m.model_dump(by_alias=True, mode='json') for m in mappings]


def load_mappings(workflow: Workflow) -> List[FieldMapping]:
    return [FieldMapping.model_validate(m) for m in (workflow.input_mappings or [])]


async def create_workflow(*, db: AsyncSession, data: WorkflowCreate) -> Workflow:
    error = validate_api_format(data.api_json) or validate_mappings(data.api_json, data.input_mappings)
    if error:
        raise ValidationError(error)

    now = datetime.now()
    workflow = Workflow(
        id=uuid.uuid4().hex,
        name=data.name,
        description=data.description or '',
        category=data.category.value,
        api_json=data.api_json,
        input_mappings=_dump_mappings(data.input_mappings),
        output_node_id=data.output_node_id or '',
        created_at=now,
        updated_at=now
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)
    return workflow


async def get_workflow(*, db: AsyncSession, workflow_id: str) -> Optional[Workflow]:
    return await db.get(Workflow, workflow_id)


async def list_workflows(*, db: AsyncSession, category: Optional[str] = None) -> List[Workflow]:
    stmt = select(Workflow)
    if category:
        stmt = stmt.where(Workflow.category == category)
    stmt = stmt.order_by(Workflow.created_at.desc())

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_workflow(
        *,
        db: AsyncSession,
        workflow_id: str,
        data: WorkflowUpdate
) -> Optional[Workflow]:
    workflow = await db.get(Workflow, workflow_id)
    if not workflow:
        return None

    if data.input_mappings is not None:
        error = validate_mappings(workflow.api_json, data.input_mappings)
        if error:
            raise ValidationError(error)
        workflow.input_mappings = _dump_mappings(data.input_mappings)

    if data.name is not None:
        workflow.name = data.name
    if data.description is not None:
        workflow.description = data.description
    if data.category is not None:
        workflow.category = data.category.value
    if data.output_node_id is not None:
        workflow.output_node_id = data.output_node_id
    workflow.updated_at = datetime.now()

    await db.commit()
    await db.refresh(workflow)
    return workflow


async def delete_workflow(*, db: AsyncSession, workflow_id: str) -> bool:
    workflow = await db.get(Workflow, workflow_id)
    if not workflow:
        return False

    await db.delete(workflow)
    await db.commit()
    return True
