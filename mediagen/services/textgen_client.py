import json
import time
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from mediagen.core.config import settings
from mediagen.core.errors import TextGenUnavailable
from mediagen.schemas.engine import ConnectionStatus
from mediagen.schemas.generation import GenerationMode
from mediagen.schemas.textgen import WorkflowExplanation
from mediagen.services.textgen_prompts import EXPLAIN_SYSTEM_PROMPT, enhance_system_prompt


class TextGenClient:
    """
    OpenAI-compatible chat backend (LM Studio by default).
    """

    def __init__(
            self,
            base_url: str | None = None,
            *,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.base_url = (base_url or settings.TEXTGEN_URL).strip().rstrip('/')
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=self._transport)

    async def chat_completion(
            self,
            messages: List[Dict[str, str]],
            *,
            model: str | None = None,
            temperature: float = 0.7,
            max_tokens: int = 500
    ) -> Optional[str]:
        payload = {
            'model': model or '',
            'messages': messages,
            'temperature': temperature,
            'max_tokens': max_tokens,
        }

        async with self._client(settings.TEXTGEN_TIMEOUT) as client:
            try:
                response = await client.post(f'{self.base_url}/v1/chat/completions', json=payload)
            except httpx.RequestError as e:
                raise TextGenUnavailable(f'LM Studio is not reachable at {self.base_url}: {e}') from e

        if response.status_code != 200:
            raise TextGenUnavailable(f'LM Studio error {response.status_code}: {response.text or response.reason_phrase}')

        data = response.json()
        try:
            content = data['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str):
            return None
        return content.strip() or None

    async def list_models(self) -> List[str]:
        async with self._client(settings.ENGINE_STATUS_TIMEOUT) as client:
            try:
                response = await client.get(f'{self.base_url}/v1/models')
            except httpx.RequestError as e:
                raise TextGenUnavailable('LM Studio is not reachable') from e

        if response.status_code != 200:
            raise TextGenUnavailable(f'HTTP {response.status_code}')

        data = response.json().get('data') or []
        return [m['id'] for m in data if isinstance(m, dict) and m.get('id')]

    async def check_status(self) -> ConnectionStatus:
        started = time.monotonic()
        try:
            models = await self.list_models()
        except TextGenUnavailable as e:
            return ConnectionStatus(connected=False, error=e.message)
        latency = int((time.monotonic() - started) * 1000)
        return ConnectionStatus(connected=True, latency=latency, models=models)

    async def enhance_prompt(
            self,
            prompt: str,
            mode: GenerationMode,
            *,
            model: str | None = None
    ) -> Optional[str]:
        enhanced = await self.chat_completion(
            [
                {'role': 'system', 'content': enhance_system_prompt(mode)},
                {'role': 'user', 'content': prompt},
            ],
            model=model,
            temperature=0.7,
            max_tokens=500
        )
        logger.debug(f'Enhanced {mode.value} prompt: {enhanced!r}')
        return enhanced

    async def explain_workflow(
            self,
            workflow_summary: str,
            *,
            model: str | None = None
    ) -> Optional[WorkflowExplanation]:
        content = await self.chat_completion(
            [
                {'role': 'system', 'content': EXPLAIN_SYSTEM_PROMPT},
                {'role': 'user', 'content': workflow_summary},
            ],
            model=model,
            temperature=0.3,
            max_tokens=1000
        )
        if not content:
            return None
        return coerce_explanation(content)


def coerce_explanation(content: str) -> WorkflowExplanation:
    """
    Models do not always honour the JSON instruction; plain text becomes the
    summary.
    """
    try:
        parsed: Any = json.loads(content)
    except ValueError:
        return WorkflowExplanation(summary=content)

    if not isinstance(parsed, dict):
        return WorkflowExplanation(summary=content)
    try:
        return WorkflowExplanation.model_validate(parsed)
    except ValueError:
        return WorkflowExplanation(summary=content)
