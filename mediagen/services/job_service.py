import json

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.core.errors import MediagenError, NotFound, ValidationError
from mediagen.schemas.generation import GenerationSubmit, JobStatus, SubmitResponse
from mediagen.services import generation_store, workflow_store
from mediagen.services.comfy_client import ComfyClient
from mediagen.services.graph_filler import fill_workflow


async def submit_generation(
        *,
        db: AsyncSession,
        data: GenerationSubmit,
        client: ComfyClient | None = None
) -> SubmitResponse:
    """
    Loads the workflow, fills it, records the generation and queues it on
    ComfyUI. The record exists before the engine answers, so a rejected
    prompt leaves an ``error`` row behind.
    """
    if not data.workflow_id or not data.mode or not data.prompt:
        raise ValidationError('workflowId, mode, and prompt are required')

    workflow = await workflow_store.get_workflow(db=db, workflow_id=data.workflow_id)
    if not workflow:
        raise NotFound('Workflow not found')

    graph = fill_workflow(
        workflow.api_json,
        workflow_store.load_mappings(workflow),
        data.params,
        data.prompt,
        negative_prompt=data.negative_prompt,
        enhanced_prompt=data.enhanced_prompt,
        input_filename=data.input_image_filename
    )
    logger.debug(f'Filled workflow {workflow.id}: {json.dumps(graph)}')

    generation = await generation_store.create_generation(
        db=db,
        mode=data.mode.value,
        workflow_id=workflow.id,
        original_prompt=data.prompt,
        enhanced_prompt=data.enhanced_prompt,
        negative_prompt=data.negative_prompt,
        params=data.params,
        input_image_path=data.input_image_filename
    )

    client = client or ComfyClient(data.engine_base_url)
    try:
        queued = await client.queue_prompt(graph, data.client_id)
    except MediagenError as e:
        await generation_store.mark_terminal(
            db=db,
            generation_id=generation.id,
            status=JobStatus.ERROR,
            error=e.message
        )
        raise

    await generation_store.update_generation(
        db=db,
        generation_id=generation.id,
        changes={'status': JobStatus.QUEUED, 'comfy_prompt_id': queued.prompt_id}
    )
    logger.info(f'Generation {generation.id} queued as prompt {queued.prompt_id} on {client.base_url}')

    return SubmitResponse(prompt_id=queued.prompt_id, generation_id=generation.id)
