from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from mediagen.api.deps import TextGenFactory, get_textgen_factory
from mediagen.core.errors import TextGenUnavailable, ValidationError
from mediagen.schemas.engine import ConnectionStatus
from mediagen.schemas.textgen import EnhanceRequest, EnhanceResponse, ExplainRequest, ExplainResponse


router = APIRouter(prefix='/textgen', tags=['textgen'])


def _unavailable(body) -> JSONResponse:
    return JSONResponse(body.model_dump(by_alias=True), status_code=503)


@router.post('/enhance', response_model=EnhanceResponse)
async def enhance_prompt(
    data: EnhanceRequest,
    textgen: TextGenFactory = Depends(get_textgen_factory)
):
    if not data.prompt or not data.mode:
        raise ValidationError('prompt and mode are required')

    try:
        enhanced = await textgen(data.textgen_url).enhance_prompt(data.prompt, data.mode, model=data.model)
    except TextGenUnavailable as e:
        return _unavailable(EnhanceResponse(enhanced_prompt=None, error=e.message))
    return EnhanceResponse(enhanced_prompt=enhanced)


@router.post('/explain', response_model=ExplainResponse, response_model_exclude_none=True)
async def explain_workflow(
    data: ExplainRequest,
    textgen: TextGenFactory = Depends(get_textgen_factory)
):
    if not data.workflow_summary:
        raise ValidationError('workflowSummary is required')

    try:
        explanation = await textgen(data.textgen_url).explain_workflow(data.workflow_summary, model=data.model)
    except TextGenUnavailable as e:
        return _unavailable(ExplainResponse(explanation=None, error=e.message))

    if explanation is None:
        return ExplainResponse(explanation=None, error='No response from LM Studio')
    return ExplainResponse(explanation=explanation)


@router.get('/status', response_model=ConnectionStatus, response_model_exclude_none=True)
async def textgen_status(
    url: str | None = Query(None),
    textgen: TextGenFactory = Depends(get_textgen_factory)
):
    status = await textgen(url).check_status()
    if not status.connected:
        return JSONResponse(status.model_dump(by_alias=True, exclude_none=True), status_code=503)
    return status
