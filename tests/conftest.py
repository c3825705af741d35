import os
import sys
import asyncio
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR))

# keep the module-level engine away from ./data
_SCRATCH = tempfile.mkdtemp(prefix='mediagen-tests-')
os.environ.setdefault('DATABASE_URL', f'sqlite+aiosqlite:///{_SCRATCH}/import.db')
os.environ.setdefault('CACHE_ROOT', f'{_SCRATCH}/outputs')

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker

from mediagen.api.deps import get_db, get_engine_factory, get_textgen_factory
from mediagen.core.config import settings
from mediagen.db.session import build_engine, init_db
from mediagen.main import create_app
from mediagen.services.comfy_client import ComfyClient
from mediagen.services.textgen_client import TextGenClient


class FakeHttpService:
    """
    Route table behind an ``httpx.MockTransport``. Values are responses or
    callables taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, response):
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text='not found')
        if callable(route):
            return route(request)
        return route

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def db_engine(tmp_path):
    engine = build_engine(f'sqlite+aiosqlite:///{tmp_path / "test.db"}')
    asyncio.run(init_db(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture()
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
def run_db(session_factory):
    """Runs ``fn(db)`` against the test database in a fresh event loop."""
    def _run(fn):
        async def _inner():
            async with session_factory() as db:
                return await fn(db)
        return asyncio.run(_inner())
    return _run


@pytest.fixture()
def cache_root(tmp_path, monkeypatch):
    root = tmp_path / 'outputs'
    monkeypatch.setattr(settings, 'CACHE_ROOT', str(root))
    return root


@pytest.fixture()
def fake_engine():
    return FakeHttpService()


@pytest.fixture()
def fake_textgen():
    return FakeHttpService()


@pytest.fixture()
def app(session_factory, fake_engine, fake_textgen, cache_root):
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    transport = fake_engine.transport
    textgen_transport = fake_textgen.transport

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine_factory] = lambda: (
        lambda url=None: ComfyClient(url, transport=transport)
    )
    app.dependency_overrides[get_textgen_factory] = lambda: (
        lambda url=None: TextGenClient(url, transport=textgen_transport)
    )
    return app


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture()
def txt2img_graph():
    return {
        '3': {
            'class_type': 'KSampler',
            'inputs': {
                'seed': 42,
                'steps': 20,
                'cfg': 7.0,
                'sampler_name': 'euler',
                'scheduler': 'normal',
                'model': ['4', 0],
                'positive': ['6', 0],
                'negative': ['7', 0],
                'latent_image': ['5', 0],
            },
        },
        '4': {'class_type': 'CheckpointLoaderSimple', 'inputs': {'ckpt_name': 'base.safetensors'}},
        '5': {'class_type': 'EmptyLatentImage', 'inputs': {'width': 512, 'height': 512, 'batch_size': 1}},
        '6': {'class_type': 'CLIPTextEncode', 'inputs': {'text': 'a cat', 'clip': ['4', 1]}},
        '7': {'class_type': 'CLIPTextEncode', 'inputs': {'text': 'blurry', 'clip': ['4', 1]}},
        '9': {'class_type': 'SaveImage', 'inputs': {'images': ['3', 0], 'filename_prefix': 'ComfyUI'}},
    }


@pytest.fixture()
def txt2img_mappings():
    return [
        {'nodeId': '6', 'fieldName': 'text', 'role': 'prompt', 'label': 'Prompt'},
        {'nodeId': '7', 'fieldName': 'text', 'role': 'negative_prompt', 'label': 'Negative Prompt'},
        {'nodeId': '5', 'fieldName': 'width', 'role': 'width', 'label': 'Width'},
        {'nodeId': '5', 'fieldName': 'height', 'role': 'height', 'label': 'Height'},
        {'nodeId': '3', 'fieldName': 'steps', 'role': 'steps', 'label': 'Steps'},
        {'nodeId': '3', 'fieldName': 'cfg', 'role': 'cfg', 'label': 'CFG Scale'},
        {'nodeId': '3', 'fieldName': 'seed', 'role': 'seed', 'label': 'Seed'},
        {'nodeId': '4', 'fieldName': 'ckpt_name', 'role': 'checkpoint', 'label': 'Checkpoint'},
    ]
