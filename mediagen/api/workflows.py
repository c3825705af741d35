from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.api.deps import get_db
from mediagen.core.errors import NotFound
from mediagen.schemas.workflow import WorkflowCreate, WorkflowOut, WorkflowUpdate
from mediagen.services import workflow_store


router = APIRouter(prefix='/workflows', tags=['workflows'])


@router.get('', response_model=list[WorkflowOut])
async def list_workflows(
    category: str | None = Query(None),
    db: AsyncSession = Depends(get_db)
):
    return await workflow_store.list_workflows(db=db, category=category)


@router.post('', response_model=WorkflowOut, status_code=201)
async def create_workflow(
    data: WorkflowCreate,
    db: AsyncSession = Depends(get_db)
):
    return await workflow_store.create_workflow(db=db, data=data)


@router.get('/{workflow_id}', response_model=WorkflowOut)
async def get_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    workflow = await workflow_store.get_workflow(db=db, workflow_id=workflow_id)
    if not workflow:
        raise NotFound('Workflow not found')
    return workflow


@router.put('/{workflow_id}', response_model=WorkflowOut)
async def update_workflow(
    workflow_id: str,
    data: WorkflowUpdate,
    db: AsyncSession = Depends(get_db)
):
    workflow = await workflow_store.update_workflow(db=db, workflow_id=workflow_id, data=data)
    if not workflow:
        raise NotFound('Workflow not found')
    return workflow


@router.delete('/{workflow_id}')
async def delete_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db)
):
    deleted = await workflow_store.delete_workflow(db=db, workflow_id=workflow_id)
    if not deleted:
        raise NotFound('Workflow not found')
    return {'success': True}
