from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from loguru import logger

from mediagen.core.config import settings
from mediagen.core.errors import EngineRejected, EngineUnavailable
from mediagen.schemas.engine import PromptQueued, UploadedFile


def derive_origin(base_url: str) -> str:
    """
    scheme://host[:port] of the engine. ComfyUI rejects requests whose Origin
    does not match its own host, so every call carries this value.
    """
    parts = urlsplit(base_url)
    if parts.scheme and parts.netloc:
        return f'{parts.scheme}://{parts.netloc}'
    return base_url


class ComfyClient:
    """Thin async wrapper over the ComfyUI REST endpoints."""

    def __init__(
            self,
            base_url: str | None = None,
            *,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.base_url = (base_url or settings.ENGINE_URL).strip().rstrip('/')
        self.origin = derive_origin(self.base_url)
        self._transport = transport

    def _headers(self, extra: Dict[str, str] | None = None) -> Dict[str, str]:
        headers = {'Origin': self.origin}
        if extra:
            headers.update(extra)
        return headers

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers=self._headers(),
            transport=self._transport
        )

    async def _request(
            self,
            method: str,
            path: str,
            *,
            timeout: float,
            operation: str,
            **kwargs: Any
    ) -> httpx.Response:
        url = f'{self.base_url}{path}'
        async with self._client(timeout) as client:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise EngineUnavailable(f'ComfyUI {operation} timed out after {timeout:g}s at {self.base_url}') from e
            except httpx.RequestError as e:
                raise EngineUnavailable(f'Failed to connect to ComfyUI at {self.base_url}: {e}') from e

            # body must be read before the client closes
            await response.aread()

        if response.status_code < 200 or response.status_code >= 300:
            raise EngineRejected(response.status_code, response.text or response.reason_phrase, operation)
        return response

    async def queue_prompt(self, graph: Dict[str, Any], client_id: str | None = None) -> PromptQueued:
        payload: Dict[str, Any] = {'prompt': graph}
        if client_id:
            payload['client_id'] = client_id

        response = await self._request(
            'POST', '/prompt',
            timeout=settings.ENGINE_SUBMIT_TIMEOUT,
            operation='prompt',
            json=payload
        )

        data = response.json()
        if not isinstance(data, dict) or not data.get('prompt_id'):
            raise EngineRejected(response.status_code, f'response missing prompt_id: {response.text}', 'prompt')
        return PromptQueued.model_validate(data)

    async def get_history(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        """
        History entry for ``prompt_id``, or None while the engine has no record.
        """
        response = await self._request(
            'GET', f'/history/{prompt_id}',
            timeout=settings.ENGINE_HISTORY_TIMEOUT,
            operation='history'
        )

        data = response.json()
        if not isinstance(data, dict):
            return None
        entry = data.get(prompt_id)
        return entry if isinstance(entry, dict) else None

    async def get_object_info(self) -> Dict[str, Any]:
        response = await self._request(
            'GET', '/object_info',
            timeout=settings.ENGINE_CATALOG_TIMEOUT,
            operation='object_info'
        )

        data = response.json()
        if not isinstance(data, dict):
            raise EngineRejected(response.status_code, 'object_info returned invalid JSON', 'object_info')
        return data

    async def view_file(
            self,
            filename: str,
            subfolder: str | None = None,
            type: str | None = None
    ) -> Tuple[bytes, str]:
        params = {'filename': filename}
        if subfolder:
            params['subfolder'] = subfolder
        if type:
            params['type'] = type

        response = await self._request(
            'GET', '/view',
            timeout=settings.ENGINE_FILE_TIMEOUT,
            operation='view',
            params=params
        )
        content_type = response.headers.get('content-type', 'application/octet-stream')
        return response.content, content_type

    async def upload_image(
            self,
            content: bytes,
            filename: str,
            *,
            overwrite: bool = False
    ) -> UploadedFile:
        files = {'image': (filename, content, 'application/octet-stream')}
        data = {'overwrite': 'true'} if overwrite else {}

        response = await self._request(
            'POST', '/upload/image',
            timeout=settings.ENGINE_FILE_TIMEOUT,
            operation='upload',
            files=files,
            data=data
        )

        response_json = response.json()
        name = response_json.get('name') or response_json.get('filename')
        if not name:
            raise EngineRejected(response.status_code, f'upload response missing name: {response_json}', 'upload')
        return UploadedFile(
            name=name,
            subfolder=response_json.get('subfolder') or '',
            type=response_json.get('type') or 'input'
        )

    async def interrupt(self) -> None:
        await self._request(
            'POST', '/interrupt',
            timeout=settings.ENGINE_STATUS_TIMEOUT,
            operation='interrupt'
        )
        logger.info(f'Interrupt sent to {self.base_url}')

    async def get_system_stats(self) -> Dict[str, Any]:
        response = await self._request(
            'GET', '/system_stats',
            timeout=settings.ENGINE_STATUS_TIMEOUT,
            operation='system_stats'
        )
        return response.json()

    def ws_url(self, client_id: str | None = None) -> str:
        if self.base_url.startswith('https://'):
            ws_base = 'wss://' + self.base_url[len('https://'):]
        elif self.base_url.startswith('http://'):
            ws_base = 'ws://' + self.base_url[len('http://'):]
        else:
            ws_base = 'ws://' + self.base_url

        url = ws_base + '/ws'
        if client_id:
            url += f'?clientId={client_id}'
        return url

    def handshake_headers(self) -> Dict[str, str]:
        # Host is taken from ws_url(), which shares the engine's netloc
        return {'Origin': self.origin}


def extract_checkpoints(object_info: Dict[str, Any]) -> list[str]:
    loader = object_info.get('CheckpointLoaderSimple') or {}
    required = ((loader.get('input') or {}).get('required') or {})
    ckpt = required.get('ckpt_name')
    if isinstance(ckpt, list) and ckpt and isinstance(ckpt[0], list):
        return [str(c) for c in ckpt[0]]
    return []
