import json
import asyncio

import httpx
import pytest

from mediagen.schemas.generation import GenerationMode, HistoryResult, JobStatus, OutputFile, SubmitResponse
from mediagen.services.generation_controller import (
    EventStreamConnection,
    GenerationApi,
    GenerationApiError,
    GenerationController,
    RetryPolicy,
)


class FakeApi:
    engine_base_url = 'http://engine:8188'

    def __init__(self, history=None, submit_error=None, history_error=None):
        self.history = history or HistoryResult(completed=False, status='running')
        self.submit_error = submit_error
        self.history_error = history_error
        self.submitted = []
        self.history_calls = 0
        self.patches = []
        self.interrupts = 0

    async def submit(self, payload):
        self.submitted.append(payload)
        if self.submit_error:
            raise self.submit_error
        return SubmitResponse(prompt_id='p-1', generation_id='g-1')

    async def fetch_history(self, prompt_id):
        self.history_calls += 1
        if self.history_error:
            raise self.history_error
        return self.history

    async def patch_generation(self, generation_id, changes):
        self.patches.append((generation_id, changes))

    async def interrupt(self):
        self.interrupts += 1

    async def enhance(self, prompt, mode):
        return f'{prompt}, golden hour, 35mm'


class FakeStream:
    def __init__(self, api, prompt_id, client_id, on_event):
        self.prompt_id = prompt_id
        self.client_id = client_id
        self.on_event = on_event
        self.refs = 0

    def acquire(self):
        self.refs += 1
        return self

    def release(self):
        self.refs -= 1


class StreamRecorder:
    def __init__(self):
        self.streams = []

    def __call__(self, api, prompt_id, client_id, on_event):
        stream = FakeStream(api, prompt_id, client_id, on_event)
        self.streams.append(stream)
        return stream


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _controller(api, mode=GenerationMode.TEXT_TO_IMAGE, **kwargs):
    kwargs.setdefault('poll_start_delay', 3600)
    kwargs.setdefault('tick_interval', 3600)
    kwargs.setdefault('stream_factory', StreamRecorder())
    return GenerationController(mode, api, **kwargs)


async def _wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError('condition never became true')


def test_first_completion_signal_wins():
    first = [OutputFile(filename='a.png')]
    second = HistoryResult(completed=True, outputs=[OutputFile(filename='b.png')], status='success')
    api = FakeApi(history=HistoryResult(completed=True, outputs=first, status='success'))
    streams = StreamRecorder()

    async def scenario():
        ctrl = _controller(api, stream_factory=streams)
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_stream_event('executing', {'node': None, 'prompt_id': 'p-1'})
        await ctrl.drain()
        ctrl.on_history(second)
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.COMPLETED
    assert [f.filename for f in ctrl.output_files] == ['a.png']
    assert ctrl.progress == 100
    assert len(api.patches) == 1
    generation_id, changes = api.patches[0]
    assert generation_id == 'g-1'
    assert changes['status'] == 'completed'
    assert changes['outputFiles'][0]['filename'] == 'a.png'
    assert changes['engineBaseUrl'] == 'http://engine:8188'
    assert streams.streams[0].refs == 0


def test_submission_shares_client_id_with_stream():
    api = FakeApi()
    streams = StreamRecorder()

    async def scenario():
        ctrl = _controller(api, stream_factory=streams)
        await ctrl.generate('wf-1', 'a cat', negative_prompt='blurry')
        ctrl.reset()

    asyncio.run(scenario())

    payload = api.submitted[0]
    assert payload['workflowId'] == 'wf-1'
    assert payload['mode'] == 'text-to-image'
    assert payload['negativePrompt'] == 'blurry'
    assert payload['params']['seed'] == -1
    assert payload['clientId'].startswith('proxy-')
    assert streams.streams[0].client_id == payload['clientId']
    assert streams.streams[0].prompt_id == 'p-1'


@pytest.mark.parametrize('mode, stalled', [
    (GenerationMode.TEXT_TO_IMAGE, True),
    (GenerationMode.TEXT_TO_VIDEO, False),
])
def test_stall_depends_on_mode(mode, stalled):
    clock = FakeClock()

    async def scenario():
        ctrl = _controller(FakeApi(), mode=mode, clock=clock)
        await ctrl.generate('wf-1', 'a cat')
        clock.now = 400.0
        ctrl.tick()
        state = ctrl.state
        ctrl.reset()
        return state

    state = asyncio.run(scenario())

    assert state.stalled is stalled
    assert state.elapsed == 400.0
    assert state.status is JobStatus.QUEUED


def test_activity_clears_stall():
    clock = FakeClock()

    async def scenario():
        ctrl = _controller(FakeApi(), clock=clock)
        await ctrl.generate('wf-1', 'a cat')
        clock.now = 350.0
        ctrl.on_stream_event('progress', {'value': 1, 'max': 10, 'prompt_id': 'p-1'})
        clock.now = 400.0
        ctrl.tick()
        stalled = ctrl.stalled
        ctrl.reset()
        return stalled

    assert asyncio.run(scenario()) is False


def test_cancel_ignores_late_result():
    api = FakeApi()
    streams = StreamRecorder()

    async def scenario():
        ctrl = _controller(api, stream_factory=streams)
        await ctrl.generate('wf-1', 'a cat')
        await ctrl.cancel()
        ctrl.on_history(HistoryResult(completed=True, outputs=[OutputFile(filename='late.png')]))
        ctrl.on_stream_event('executing', {'node': None, 'prompt_id': 'p-1'})
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.IDLE
    assert ctrl.output_files == []
    assert api.interrupts == 1
    assert api.patches == []
    assert api.history_calls == 0
    assert streams.streams[0].refs == 0


def test_rejected_submission_sets_error_without_stream():
    api = FakeApi(submit_error=GenerationApiError('Workflow not found'))
    streams = StreamRecorder()

    async def scenario():
        ctrl = _controller(api, stream_factory=streams)
        await ctrl.generate('wf-404', 'a cat')
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.ERROR
    assert ctrl.error == 'Workflow not found'
    assert streams.streams == []


def test_execution_error_is_terminal_and_persisted():
    api = FakeApi()

    async def scenario():
        ctrl = _controller(api)
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_stream_event('execution_error', {
            'prompt_id': 'p-1',
            'exception_message': 'CUDA out of memory',
            'node_id': '3',
            'node_type': 'KSampler',
        })
        ctrl.on_history(HistoryResult(completed=True, outputs=[OutputFile(filename='x.png')]))
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.ERROR
    assert ctrl.error == 'ComfyUI error in "KSampler" (node 3): CUDA out of memory'
    assert ctrl.output_files == []
    assert [c['status'] for _, c in api.patches] == ['error']


def test_interrupted_on_server():
    async def scenario():
        ctrl = _controller(FakeApi())
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_stream_event('execution_interrupted', {'prompt_id': 'p-1'})
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.ERROR
    assert ctrl.error == 'Generation was interrupted on the ComfyUI server'


def test_progress_and_foreign_events():
    async def scenario():
        ctrl = _controller(FakeApi())
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_stream_event('status', {'status': {'exec_info': {'queue_remaining': 2}}})
        ctrl.on_stream_event('progress', {'value': 9, 'max': 10, 'prompt_id': 'other'})
        before = ctrl.state
        ctrl.on_stream_event('executing', {'node': '3', 'prompt_id': 'p-1'})
        ctrl.on_stream_event('progress', {'value': 5, 'max': 20, 'prompt_id': 'p-1'})
        after = ctrl.state
        ctrl.reset()
        return before, after

    before, after = asyncio.run(scenario())

    assert before.status is JobStatus.QUEUED
    assert before.queue_remaining == 2
    assert before.progress == 0
    assert after.status is JobStatus.PROCESSING
    assert after.current_node == '3'
    assert after.progress == 25
    assert (after.progress_value, after.progress_max) == (5, 20)


def test_pending_history_moves_queued_to_processing():
    async def scenario():
        ctrl = _controller(FakeApi())
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_history(HistoryResult(completed=False, status='running'))
        status = ctrl.status
        ctrl.reset()
        return status

    assert asyncio.run(scenario()) is JobStatus.PROCESSING


def test_polling_completes_without_stream():
    api = FakeApi(history=HistoryResult(completed=True, outputs=[OutputFile(filename='clip.mp4', media_type='video')]))

    async def scenario():
        ctrl = _controller(api, mode=GenerationMode.TEXT_TO_VIDEO, poll_start_delay=0, poll_interval=0)
        await ctrl.generate('wf-1', 'a wave')
        await _wait_until(lambda: ctrl.status is JobStatus.COMPLETED)
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.output_files[0].media_type == 'video'
    assert len(api.patches) == 1


def test_unreachable_result_is_abandoned():
    api = FakeApi(history_error=GenerationApiError('Failed to fetch generation result'))

    async def scenario():
        ctrl = _controller(
            api,
            poll_start_delay=0,
            poll_interval=0,
            retry_policy=RetryPolicy(max_consecutive_failures=3)
        )
        await ctrl.generate('wf-1', 'a cat')
        await _wait_until(lambda: ctrl.status.is_terminal)
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.ABANDONED
    assert api.history_calls == 3
    assert api.patches[-1][1]['status'] == 'abandoned'


def test_retry_policy_limits():
    assert RetryPolicy(max_consecutive_failures=2).exhausted(2, 0.0)
    assert not RetryPolicy(max_consecutive_failures=2).exhausted(1, 1e6)
    assert RetryPolicy(max_consecutive_failures=None, max_duration=60).exhausted(1, 60.0)
    assert not RetryPolicy(max_consecutive_failures=None).exhausted(10_000, 1e9)


def test_generate_is_ignored_while_active():
    api = FakeApi()

    async def scenario():
        ctrl = _controller(api)
        await ctrl.generate('wf-1', 'a cat')
        await ctrl.generate('wf-1', 'a dog')
        ctrl.reset()

    asyncio.run(scenario())

    assert len(api.submitted) == 1


def test_enhanced_prompt_is_sent_with_next_submission():
    api = FakeApi()

    async def scenario():
        ctrl = _controller(api)
        enhanced = await ctrl.enhance_prompt('a cat')
        status = ctrl.status
        await ctrl.generate('wf-1', 'a cat')
        ctrl.reset()
        return enhanced, status, ctrl

    enhanced, status, ctrl = asyncio.run(scenario())

    assert enhanced == 'a cat, golden hour, 35mm'
    assert status is JobStatus.IDLE
    assert api.submitted[0]['enhancedPrompt'] == enhanced
    assert ctrl.enhanced_prompt is None


def test_reset_after_completion_allows_new_job():
    api = FakeApi(history=HistoryResult(completed=True, outputs=[OutputFile(filename='a.png')]))

    async def scenario():
        ctrl = _controller(api)
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_history(api.history)
        ctrl.reset()
        state = ctrl.state
        await ctrl.generate('wf-1', 'a dog')
        status = ctrl.status
        ctrl.reset()
        await ctrl.drain()
        return state, status

    state, status = asyncio.run(scenario())

    assert state.status is JobStatus.IDLE
    assert state.output_files == []
    assert state.generation_id is None
    assert status is JobStatus.QUEUED
    assert len(api.submitted) == 2


class HangingStreamApi:
    def __init__(self):
        self.opened = 0

    async def stream_events(self, prompt_id, client_id):
        self.opened += 1
        yield 'connected', {'clientId': client_id}
        await asyncio.sleep(3600)


def test_event_stream_connection_is_ref_counted():
    api = HangingStreamApi()
    received = []

    async def scenario():
        conn = EventStreamConnection(api, 'p-1', 'proxy-1', lambda name, data: received.append((name, data)))
        conn.acquire()
        conn.acquire()
        await _wait_until(lambda: received)
        conn.release()
        still_open = conn.open
        conn.release()
        conn.release()
        return conn, still_open

    conn, still_open = asyncio.run(scenario())

    assert api.opened == 1
    assert still_open is True
    assert conn.open is False
    assert conn.refcount == 0
    assert received == [('connected', {'clientId': 'proxy-1'})]


def test_generation_api_parses_event_stream():
    seen = {}

    def handler(request):
        seen['params'] = dict(request.url.params)
        body = (
            'event: connected\ndata: {"clientId":"proxy-1"}\n\n'
            ': keepalive\n\n'
            'event: progress\ndata: {"value":1,"max":4,"prompt_id":"p-1"}\n\n'
        )
        return httpx.Response(200, text=body, headers={'content-type': 'text/event-stream'})

    api = GenerationApi('http://app', engine_base_url='http://engine:8188', transport=httpx.MockTransport(handler))

    async def scenario():
        return [event async for event in api.stream_events('p-1', 'proxy-1')]

    events = asyncio.run(scenario())

    assert events == [
        ('connected', {'clientId': 'proxy-1'}),
        ('progress', {'value': 1, 'max': 4, 'prompt_id': 'p-1'}),
    ]
    assert seen['params'] == {'engineBaseUrl': 'http://engine:8188', 'clientId': 'proxy-1', 'promptId': 'p-1'}


def test_generation_api_surfaces_server_error_message():
    def handler(request):
        body = json.loads(request.content)
        assert body['engineBaseUrl'] == 'http://engine:8188'
        return httpx.Response(404, json={'error': 'Workflow not found'})

    api = GenerationApi('http://app', engine_base_url='http://engine:8188', transport=httpx.MockTransport(handler))

    with pytest.raises(GenerationApiError) as exc_info:
        asyncio.run(api.submit({'workflowId': 'nope'}))

    assert exc_info.value.message == 'Workflow not found'


class FlakyApi(FakeApi):
    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def fetch_history(self, prompt_id):
        self.history_calls += 1
        if self.history_calls <= self.failures:
            raise GenerationApiError('Failed to fetch generation result: connection reset')
        return self.history


def test_poll_failures_below_limit_are_retried():
    api = FlakyApi(failures=2, history=HistoryResult(completed=True, outputs=[OutputFile(filename='a.png')]))

    async def scenario():
        ctrl = _controller(
            api,
            poll_start_delay=0,
            poll_interval=0,
            retry_policy=RetryPolicy(max_consecutive_failures=3)
        )
        await ctrl.generate('wf-1', 'a cat')
        await _wait_until(lambda: ctrl.status.is_terminal)
        await ctrl.drain()
        return ctrl

    ctrl = asyncio.run(scenario())

    assert ctrl.status is JobStatus.COMPLETED
    assert ctrl.error is None
    assert api.history_calls == 3
    assert [c['status'] for _, c in api.patches] == ['completed']


def test_polling_waits_for_start_delay():
    api = FakeApi()

    async def scenario():
        ctrl = _controller(api, poll_start_delay=0.2, poll_interval=0)
        await ctrl.generate('wf-1', 'a cat')
        await asyncio.sleep(0.05)
        before = api.history_calls
        await _wait_until(lambda: api.history_calls > 0)
        ctrl.reset()
        return before

    assert asyncio.run(scenario()) == 0


class FailingEnhanceApi(FakeApi):
    async def enhance(self, prompt, mode):
        raise GenerationApiError('LM Studio is not reachable')


def test_failed_enhance_leaves_job_fields_alone():
    api = FailingEnhanceApi(history=HistoryResult(completed=True, outputs=[OutputFile(filename='a.png')]))

    async def scenario():
        ctrl = _controller(api)
        await ctrl.generate('wf-1', 'a cat')
        ctrl.on_history(api.history)
        await ctrl.drain()
        result = await ctrl.enhance_prompt('a dog')
        return result, ctrl.state

    result, state = asyncio.run(scenario())

    assert result is None
    assert state.enhance_error == 'LM Studio is not reachable'
    assert state.error is None
    assert state.status is JobStatus.COMPLETED
    assert [f.filename for f in state.output_files] == ['a.png']


class ChattyStreamApi:
    def __init__(self):
        self.closed = False

    async def stream_events(self, prompt_id, client_id):
        try:
            yield 'executing', {'node': None, 'prompt_id': prompt_id}
            yield 'progress', {'value': 1, 'max': 2, 'prompt_id': prompt_id}
            await asyncio.sleep(3600)
        finally:
            self.closed = True


def test_release_from_own_callback_stops_the_stream():
    api = ChattyStreamApi()
    received = []

    async def scenario():
        def on_event(name, data):
            received.append(name)
            conn.release()

        conn = EventStreamConnection(api, 'p-1', 'proxy-1', on_event)
        conn.acquire()
        await _wait_until(lambda: api.closed)
        return conn

    conn = asyncio.run(scenario())

    assert received == ['executing']
    assert conn.open is False
