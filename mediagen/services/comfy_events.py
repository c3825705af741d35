import json
import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import websockets
from loguru import logger

from mediagen.core.config import settings
from mediagen.services.comfy_client import ComfyClient


RELAYED_EVENTS = frozenset({
    'status',
    'execution_start',
    'executing',
    'progress',
    'execution_error',
    'execution_interrupted',
    'execution_cached',
})

KEEPALIVE = ': keepalive\n\n'

_CLOSED = object()
_FAILED = object()


def format_sse(event: str, data: Any) -> str:
    return f'event: {event}\ndata: {json.dumps(data, separators=(",", ":"))}\n\n'


def ends_execution(event_type: str, data: Dict[str, Any]) -> bool:
    if event_type == 'executing':
        return 'node' in data and data['node'] is None
    return event_type in ('execution_error', 'execution_interrupted')


async def _pump(ws, queue: asyncio.Queue, prompt_id: str) -> None:
    try:
        async for raw in ws:
            queue.put_nowait(raw)
    except websockets.exceptions.ConnectionClosedError as e:
        logger.info(f'[events] upstream closed abnormally: prompt={prompt_id} err={e}')
    except (websockets.exceptions.WebSocketException, OSError) as e:
        logger.warning(f'[events] upstream error: prompt={prompt_id} err={e}')
        queue.put_nowait(_FAILED)
    finally:
        queue.put_nowait(_CLOSED)


async def relay_engine_events(
        base_url: str,
        client_id: str,
        prompt_id: str,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        keepalive_interval: float | None = None,
        close_delay: float | None = None,
        connect: Callable[..., Awaitable[Any]] = websockets.connect
) -> AsyncIterator[str]:
    """
    Opens one ComfyUI websocket and yields SSE chunks for ``prompt_id``.

    Events of other prompts and binary preview frames are dropped. The stream
    ends ``close_delay`` seconds after the tracked prompt finishes or fails,
    when the upstream socket closes, or when the client goes away.
    """
    keepalive_interval = keepalive_interval or settings.KEEPALIVE_INTERVAL
    close_delay = settings.STREAM_CLOSE_DELAY if close_delay is None else close_delay

    client = ComfyClient(base_url)
    ws_url = client.ws_url(client_id)
    logger.info(f'[events] connecting to {ws_url} for prompt {prompt_id}')

    try:
        ws = await connect(
            ws_url,
            additional_headers=client.handshake_headers(),
            ping_interval=20,
            ping_timeout=20,
            max_size=None
        )
    except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
        logger.warning(f'[events] connect failed: prompt={prompt_id} err={e}')
        yield format_sse('error', {'message': 'Failed to connect to ComfyUI WebSocket'})
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    reader = asyncio.create_task(_pump(ws, queue, prompt_id))
    next_keepalive = loop.time() + keepalive_interval
    close_at: Optional[float] = None

    try:
        logger.info(f'[events] connected for prompt {prompt_id}')
        yield format_sse('connected', {'clientId': client_id})

        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.info(f'[events] client disconnected: prompt={prompt_id}')
                return

            now = loop.time()
            if close_at is not None and now >= close_at:
                return
            if now >= next_keepalive:
                yield KEEPALIVE
                next_keepalive = now + keepalive_interval
                continue

            wait_until = next_keepalive if close_at is None else min(next_keepalive, close_at)
            try:
                item = await asyncio.wait_for(queue.get(), timeout=max(0.0, wait_until - now))
            except asyncio.TimeoutError:
                continue

            if item is _CLOSED:
                yield format_sse('disconnected', {})
                return
            if item is _FAILED:
                yield format_sse('error', {'message': 'ComfyUI WebSocket connection error'})
                continue
            # binary frames are previews
            if not isinstance(item, str):
                continue

            try:
                message = json.loads(item)
            except ValueError:
                continue
            if not isinstance(message, dict):
                continue

            event_type = message.get('type')
            data = message.get('data')
            fields = data if isinstance(data, dict) else {}

            event_prompt = fields.get('prompt_id')
            if prompt_id and event_prompt and event_prompt != prompt_id:
                continue

            if event_type in RELAYED_EVENTS:
                yield format_sse(event_type, data if data is not None else {})

            if close_at is None and event_prompt == prompt_id and ends_execution(event_type, fields):
                close_at = loop.time() + close_delay
    finally:
        reader.cancel()
        await ws.close()
        logger.info(f'[events] closed for prompt {prompt_id}')
