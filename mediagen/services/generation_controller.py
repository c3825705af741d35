"""
Client-side lifecycle of one generation at a time.

The controller talks to this application's own HTTP API (submission, result,
event stream, record PATCH, interrupt) and reconciles two channels that race
each other: the event stream relayed from ComfyUI and a delayed polling
fallback. Both report into plain synchronous methods on the same event loop
and the first terminal signal wins; every later one is dropped by the
``_completed`` guard.
"""
import json
import time
import uuid
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import httpx
from loguru import logger

from mediagen.core.config import settings
from mediagen.core.errors import EngineExecutionError, EngineInterrupted, MediagenError
from mediagen.schemas.generation import (
    GenerationMode,
    HistoryResult,
    JobParams,
    JobStatus,
    OutputFile,
    SubmitResponse,
)


class GenerationApiError(MediagenError):
    """Our own API answered with an error or could not be reached."""


class GenerationApi:
    """
    HTTP channels the controller needs, pointed at a running mediagen server.
    """

    def __init__(
            self,
            base_url: str = 'http://localhost:8000',
            *,
            engine_base_url: str | None = None,
            textgen_url: str | None = None,
            textgen_model: str | None = None,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.base_url = base_url.rstrip('/')
        self.engine_base_url = engine_base_url or settings.ENGINE_URL
        self.textgen_url = textgen_url or settings.TEXTGEN_URL
        self.textgen_model = textgen_model
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    @staticmethod
    def _error_from(response: httpx.Response, fallback: str) -> GenerationApiError:
        try:
            message = response.json().get('error')
        except ValueError:
            message = None
        return GenerationApiError(message or f'{fallback} (HTTP {response.status_code})')

    async def _send(self, method: str, url: str, *, timeout: float, fallback: str, **kwargs) -> httpx.Response:
        async with self._client(timeout) as client:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                raise GenerationApiError(f'{fallback}: {e}') from e
        if response.is_error:
            raise self._error_from(response, fallback)
        return response

    async def submit(self, payload: Dict[str, Any]) -> SubmitResponse:
        body = dict(payload, engineBaseUrl=self.engine_base_url)
        response = await self._send(
            'POST', '/api/engine/prompt',
            timeout=settings.ENGINE_SUBMIT_TIMEOUT + 5,
            fallback='Failed to queue generation',
            json=body
        )
        return SubmitResponse.model_validate(response.json())

    async def fetch_history(self, prompt_id: str) -> HistoryResult:
        response = await self._send(
            'GET', f'/api/engine/history/{prompt_id}',
            timeout=settings.ENGINE_HISTORY_TIMEOUT + 5,
            fallback='Failed to fetch generation result',
            params={'engineBaseUrl': self.engine_base_url}
        )
        return HistoryResult.model_validate(response.json())

    async def patch_generation(self, generation_id: str, changes: Dict[str, Any]) -> None:
        await self._send(
            'PATCH', f'/api/generations/{generation_id}',
            timeout=10.0,
            fallback='Failed to update generation',
            json=changes
        )

    async def interrupt(self) -> None:
        await self._send(
            'POST', '/api/engine/interrupt',
            timeout=settings.ENGINE_STATUS_TIMEOUT + 5,
            fallback='Failed to interrupt generation',
            json={'engineBaseUrl': self.engine_base_url}
        )

    async def enhance(self, prompt: str, mode: GenerationMode) -> Optional[str]:
        response = await self._send(
            'POST', '/api/textgen/enhance',
            timeout=settings.TEXTGEN_TIMEOUT + 5,
            fallback='Prompt enhancement failed',
            json={
                'prompt': prompt,
                'mode': mode.value,
                'textgenUrl': self.textgen_url,
                'model': self.textgen_model,
            }
        )
        return response.json().get('enhancedPrompt')

    async def stream_events(self, prompt_id: str, client_id: str) -> AsyncIterator[Tuple[str, Any]]:
        """
        Yields ``(event, data)`` pairs from the SSE endpoint. Comment lines
        (keep-alives) are consumed silently.
        """
        params = {
            'engineBaseUrl': self.engine_base_url,
            'clientId': client_id,
            'promptId': prompt_id,
        }
        timeout = httpx.Timeout(10.0, read=None)

        async with self._client(timeout) as client:
            async with client.stream('GET', '/api/engine/events', params=params) as response:
                if response.is_error:
                    await response.aread()
                    raise self._error_from(response, 'Event stream refused')

                event: Optional[str] = None
                data_lines: List[str] = []
                async for line in response.aiter_lines():
                    if line == '':
                        if data_lines:
                            try:
                                data = json.loads('\n'.join(data_lines))
                            except ValueError:
                                data = None
                            yield event or 'message', data
                        event, data_lines = None, []
                        continue
                    if line.startswith(':'):
                        continue

                    name, _, value = line.partition(':')
                    if value.startswith(' '):
                        value = value[1:]
                    if name == 'event':
                        event = value
                    elif name == 'data':
                        data_lines.append(value)


EventHandler = Callable[[str, Any], None]


class EventStreamConnection:
    """
    One event-stream subscription for one prompt.

    Owners ``acquire()`` it and ``release()`` it when done; the underlying
    request is opened on the first acquire and torn down on the last release.
    """

    def __init__(
            self,
            api: GenerationApi,
            prompt_id: str,
            client_id: str,
            on_event: EventHandler
    ):
        self.api = api
        self.prompt_id = prompt_id
        self.client_id = client_id
        self._on_event = on_event
        self._refs = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def refcount(self) -> int:
        return self._refs

    @property
    def open(self) -> bool:
        return self._task is not None and not self._task.done()

    def acquire(self) -> 'EventStreamConnection':
        self._refs += 1
        if self._refs == 1 and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def release(self) -> None:
        if self._refs == 0:
            return
        self._refs -= 1
        if self._refs == 0 and self._task is not None:
            # released from inside a callback: _run stops after it returns
            self._stopped = True
            if self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        events = self.api.stream_events(self.prompt_id, self.client_id)
        try:
            async for name, data in events:
                if self._stopped:
                    break
                self._on_event(name, data)
        except (GenerationApiError, httpx.HTTPError) as e:
            # not escalated: polling covers a dead stream
            logger.info(f'Event stream for prompt {self.prompt_id} dropped: {e}')
        finally:
            await events.aclose()


StreamFactory = Callable[[GenerationApi, str, str, EventHandler], EventStreamConnection]


@dataclass(frozen=True)
class RetryPolicy:
    """
    When to stop polling an unreachable result endpoint. ``None`` disables a
    limit; with both limits disabled polling retries for as long as the job is
    active.
    """
    max_consecutive_failures: Optional[int] = 20
    max_duration: Optional[float] = None

    def exhausted(self, consecutive_failures: int, elapsed: float) -> bool:
        if self.max_consecutive_failures is not None and consecutive_failures >= self.max_consecutive_failures:
            return True
        if self.max_duration is not None and elapsed >= self.max_duration:
            return True
        return False


@dataclass(frozen=True)
class GenerationState:
    status: JobStatus
    progress: int = 0
    progress_value: int = 0
    progress_max: int = 0
    current_node: Optional[str] = None
    queue_remaining: int = 0
    output_files: List[OutputFile] = field(default_factory=list)
    generation_id: Optional[str] = None
    prompt_id: Optional[str] = None
    enhanced_prompt: Optional[str] = None
    enhance_error: Optional[str] = None
    error: Optional[str] = None
    elapsed: float = 0.0
    stalled: bool = False


def stall_threshold_for(mode: GenerationMode) -> float:
    if mode.is_image_class:
        return settings.STALL_THRESHOLD_IMAGE
    return settings.STALL_THRESHOLD_VIDEO


class GenerationController:

    def __init__(
            self,
            mode: GenerationMode,
            api: GenerationApi,
            *,
            clock: Callable[[], float] = time.monotonic,
            poll_interval: float | None = None,
            poll_start_delay: float | None = None,
            tick_interval: float = 1.0,
            stall_threshold: float | None = None,
            retry_policy: RetryPolicy | None = None,
            stream_factory: StreamFactory = EventStreamConnection
    ):
        self.mode = mode
        self.api = api
        self.clock = clock
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.poll_start_delay = settings.POLL_START_DELAY if poll_start_delay is None else poll_start_delay
        self.tick_interval = tick_interval
        self.stall_threshold = stall_threshold_for(mode) if stall_threshold is None else stall_threshold
        self.retry_policy = retry_policy or RetryPolicy(
            max_consecutive_failures=settings.POLL_MAX_CONSECUTIVE_FAILURES
        )
        self.stream_factory = stream_factory

        self._completed = False
        self._stream: Optional[EventStreamConnection] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._poll_failures = 0

        self.enhanced_prompt: Optional[str] = None
        self.enhance_error: Optional[str] = None
        self.generation_id: Optional[str] = None
        self.output_files: List[OutputFile] = []
        self._clear_job()

    def _clear_job(self) -> None:
        self.status = JobStatus.IDLE
        self.prompt_id: Optional[str] = None
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None
        self.last_activity: Optional[float] = None
        self.elapsed = 0.0
        self.stalled = False
        self.progress = 0
        self.progress_value = 0
        self.progress_max = 0
        self.current_node: Optional[str] = None
        self.queue_remaining = 0
        self._poll_failures = 0

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def state(self) -> GenerationState:
        return GenerationState(
            status=self.status,
            progress=self.progress,
            progress_value=self.progress_value,
            progress_max=self.progress_max,
            current_node=self.current_node,
            queue_remaining=self.queue_remaining,
            output_files=list(self.output_files),
            generation_id=self.generation_id,
            prompt_id=self.prompt_id,
            enhanced_prompt=self.enhanced_prompt,
            enhance_error=self.enhance_error,
            error=self.error,
            elapsed=self.elapsed,
            stalled=self.stalled,
        )

    # -- background plumbing -------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Waits for pending record updates and one-shot result fetches."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _touch(self) -> None:
        self.last_activity = self.clock()

    def _start_ticker(self) -> None:
        self._stop_ticker()
        self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())

    def _stop_ticker(self) -> None:
        if self._tick_task is not None and self._tick_task is not asyncio.current_task():
            self._tick_task.cancel()
        self._tick_task = None

    def _stop_polling(self) -> None:
        if self._poll_task is not None and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        self._poll_task = None

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.release()
            self._stream = None

    def _teardown(self) -> None:
        self._stop_polling()
        self._close_stream()
        self._stop_ticker()

    def _freeze_elapsed(self) -> None:
        if self.started_at is not None:
            self.elapsed = self.clock() - self.started_at

    # -- terminal transitions ------------------------------------------------

    def _persist(self, changes: Dict[str, Any]) -> None:
        generation_id = self.generation_id
        if not generation_id:
            return

        async def _patch():
            try:
                await self.api.patch_generation(generation_id, changes)
            except (MediagenError, httpx.HTTPError) as e:
                logger.warning(f'Could not persist generation {generation_id}: {e}')

        self._spawn(_patch())

    def _complete(self, outputs: List[OutputFile]) -> None:
        if self._completed:
            return
        self._completed = True

        self.output_files = list(outputs)
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self._freeze_elapsed()
        self._teardown()
        logger.info(f'Generation {self.generation_id} completed with {len(outputs)} output(s)')

        self._persist({
            'status': JobStatus.COMPLETED.value,
            'outputFiles': [f.model_dump(by_alias=True) for f in outputs],
            'completedAt': datetime.now().isoformat(),
            'engineBaseUrl': self.api.engine_base_url,
        })

    def _fail(self, message: str, status: JobStatus = JobStatus.ERROR) -> None:
        if self._completed:
            return
        self._completed = True

        self.error = message
        self.status = status
        self._freeze_elapsed()
        self._teardown()
        logger.warning(f'Generation {self.generation_id} ended as {status.value}: {message}')

        self._persist({
            'status': status.value,
            'error': message,
            'completedAt': datetime.now().isoformat(),
        })

    # -- channel handlers (never await) ---------------------------------------

    def on_stream_event(self, name: str, data: Any) -> None:
        if self._completed or not self.is_active:
            return
        payload = data if isinstance(data, dict) else {}
        tracked = self.prompt_id is not None and payload.get('prompt_id') == self.prompt_id

        if name == 'connected':
            self._touch()

        elif name == 'status':
            exec_info = (payload.get('status') or {}).get('exec_info') or {}
            self.queue_remaining = exec_info.get('queue_remaining') or 0
            self._touch()

        elif name == 'execution_start' and tracked:
            self._touch()
            self.status = JobStatus.PROCESSING
            self.progress = 0
            self.current_node = None

        elif name == 'executing' and tracked:
            self._touch()
            if 'node' in payload and payload['node'] is None:
                # finished: do not wait for the next poll
                self._close_stream()
                self._spawn(self._fetch_result_once(self.prompt_id))
            else:
                self.current_node = payload.get('node') or None
                self.status = JobStatus.PROCESSING

        elif name == 'progress' and tracked and payload.get('max'):
            self._touch()
            value = payload.get('value') or 0
            maximum = payload['max']
            self.progress = round(value / maximum * 100)
            self.progress_value = value
            self.progress_max = maximum
            self.status = JobStatus.PROCESSING

        elif name == 'execution_error' and tracked:
            self._fail(EngineExecutionError(
                payload.get('exception_message'),
                payload.get('node_id'),
                payload.get('node_type')
            ).message)

        elif name == 'execution_interrupted' and tracked:
            self._fail(EngineInterrupted().message)

    def on_history(self, result: HistoryResult) -> None:
        if self._completed:
            return
        self._touch()

        if result.status == 'error':
            self._fail(result.error or 'ComfyUI reported an error')
            return
        if result.completed:
            self._complete(result.outputs)
            return
        if result.status and self.status == JobStatus.QUEUED:
            self.status = JobStatus.PROCESSING

    def tick(self) -> None:
        if self.started_at is None or not self.is_active:
            return
        now = self.clock()
        self.elapsed = now - self.started_at
        last = max(self.last_activity or 0.0, self.started_at)
        self.stalled = (now - last) > self.stall_threshold

    # -- loops ---------------------------------------------------------------

    async def _tick_loop(self) -> None:
        while self.is_active:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    async def _fetch_result_once(self, prompt_id: str) -> None:
        if self._completed:
            return
        try:
            result = await self.api.fetch_history(prompt_id)
        except (MediagenError, httpx.HTTPError, ValueError) as e:
            logger.debug(f'Result fetch for {prompt_id} failed, polling will retry: {e}')
            return
        if prompt_id == self.prompt_id:
            self.on_history(result)

    def _polling(self, prompt_id: str) -> bool:
        return (
            not self._completed
            and self.prompt_id == prompt_id
            and self.status in (JobStatus.QUEUED, JobStatus.PROCESSING)
        )

    async def _poll_loop(self, prompt_id: str) -> None:
        await asyncio.sleep(self.poll_start_delay)
        while self._polling(prompt_id):
            await self._poll_once(prompt_id)
            if not self._polling(prompt_id):
                break
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self, prompt_id: str) -> None:
        try:
            result = await self.api.fetch_history(prompt_id)
        except (MediagenError, httpx.HTTPError, ValueError) as e:
            if not self._polling(prompt_id):
                return
            self._poll_failures += 1
            logger.debug(f'Poll {self._poll_failures} for {prompt_id} failed: {e}')
            elapsed = self.clock() - (self.started_at or self.clock())
            if self.retry_policy.exhausted(self._poll_failures, elapsed):
                self._fail(
                    f'Gave up waiting for the result after {self._poll_failures} failed attempt(s): {e}',
                    status=JobStatus.ABANDONED
                )
            return

        if prompt_id != self.prompt_id:
            return
        self._poll_failures = 0
        self.on_history(result)

        if self._polling(prompt_id) and self.retry_policy.max_duration is not None:
            elapsed = self.clock() - (self.started_at or self.clock())
            if elapsed >= self.retry_policy.max_duration:
                self._fail(
                    f'Gave up waiting for the result after {elapsed:.0f}s',
                    status=JobStatus.ABANDONED
                )

    # -- user operations ------------------------------------------------------

    async def enhance_prompt(self, prompt: str) -> Optional[str]:
        if self.is_active:
            return None

        # job fields (error, elapsed, outputs) are left alone
        previous = self.status
        self.status = JobStatus.ENHANCING
        self.enhance_error = None
        result: Optional[str] = None
        try:
            result = await self.api.enhance(prompt, self.mode)
        except (MediagenError, httpx.HTTPError) as e:
            self.enhance_error = getattr(e, 'message', None) or str(e) or 'Prompt enhancement failed'
            logger.warning(f'Prompt enhancement failed: {e}')
        finally:
            self.status = previous

        if result:
            self.enhanced_prompt = result
        return result

    async def generate(
            self,
            workflow_id: str,
            prompt: str,
            negative_prompt: str | None = None,
            params: JobParams | None = None,
            input_image_filename: str | None = None
    ) -> None:
        if self.is_active:
            return

        self._teardown()
        self._completed = False
        self._clear_job()
        self.output_files = []
        self.generation_id = None
        self.status = JobStatus.QUEUED
        self.started_at = self.clock()
        self._start_ticker()

        params = params or JobParams()
        client_id = f'proxy-{uuid.uuid4().hex}'
        payload = {
            'workflowId': workflow_id,
            'mode': self.mode.value,
            'prompt': prompt,
            'negativePrompt': negative_prompt,
            'enhancedPrompt': self.enhanced_prompt,
            'params': params.model_dump(by_alias=True),
            'inputImageFilename': input_image_filename,
            'clientId': client_id,
        }

        try:
            submitted = await self.api.submit(payload)
        except (MediagenError, httpx.HTTPError, ValueError) as e:
            if self.status != JobStatus.QUEUED or self._completed:
                return
            self.error = getattr(e, 'message', None) or str(e) or 'Generation failed'
            self.status = JobStatus.ERROR
            self._freeze_elapsed()
            self._stop_ticker()
            logger.warning(f'Submission failed: {self.error}')
            return

        # cancelled while the submission was in flight
        if self._completed or self.status != JobStatus.QUEUED:
            return

        self.prompt_id = submitted.prompt_id
        self.generation_id = submitted.generation_id
        logger.info(f'Generation {self.generation_id} queued as prompt {self.prompt_id}')

        self._stream = self.stream_factory(self.api, submitted.prompt_id, client_id, self.on_stream_event)
        self._stream.acquire()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(submitted.prompt_id))

    async def cancel(self) -> None:
        # guard first so nothing in flight can complete the job
        self._completed = True
        self._teardown()

        try:
            await self.api.interrupt()
        except (MediagenError, httpx.HTTPError) as e:
            logger.info(f'Interrupt failed, cancelling locally anyway: {e}')

        self._clear_job()
        logger.info('Generation cancelled')

    def reset(self) -> None:
        self._teardown()
        self._completed = False
        self._clear_job()
        self.generation_id = None
        self.enhanced_prompt = None
        self.enhance_error = None
        self.output_files = []
