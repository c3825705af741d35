import os
import shutil
from typing import Iterable, Optional

from loguru import logger

from mediagen.core.config import settings
from mediagen.core.errors import MediagenError
from mediagen.schemas.generation import OutputFile
from mediagen.services.comfy_client import ComfyClient


MIME_MAP = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.webp': 'image/webp',
    '.gif': 'image/gif',
    '.mp4': 'video/mp4',
    '.webm': 'video/webm',
}


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def cache_dir(generation_id: str, root: Optional[str] = None) -> str:
    return os.path.join(root or settings.CACHE_ROOT, os.path.basename(generation_id))


def cache_path(generation_id: str, filename: str, root: Optional[str] = None) -> str:
    # basename keeps engine-provided names inside the generation folder
    return os.path.join(cache_dir(generation_id, root), os.path.basename(filename))


def is_cached(generation_id: str, filename: str, root: Optional[str] = None) -> bool:
    return os.path.isfile(cache_path(generation_id, filename, root))


def read_cached_file(generation_id: str, filename: str, root: Optional[str] = None) -> Optional[bytes]:
    path = cache_path(generation_id, filename, root)
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError:
        return None


def write_cached_file(generation_id: str, filename: str, data: bytes, root: Optional[str] = None) -> str:
    path = cache_path(generation_id, filename, root)
    ensure_dir(os.path.dirname(path))
    with open(path, 'wb') as f:
        f.write(data)
    return path


def delete_cached_files(generation_id: str, root: Optional[str] = None) -> None:
    shutil.rmtree(cache_dir(generation_id, root), ignore_errors=True)


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    return MIME_MAP.get(ext, 'application/octet-stream')


async def eager_cache_outputs(
        generation_id: str,
        output_files: Iterable[OutputFile],
        engine_base_url: Optional[str] = None,
        *,
        client: Optional[ComfyClient] = None,
        root: Optional[str] = None
) -> int:
    """
    Downloads every output not yet cached. Failures are logged per file and
    never raised; returns how many files were written.
    """
    client = client or ComfyClient(engine_base_url)
    written = 0

    for file in output_files:
        if is_cached(generation_id, file.filename, root):
            continue
        try:
            content, _ = await client.view_file(file.filename, file.subfolder, file.type)
            write_cached_file(generation_id, file.filename, content, root)
            written += 1
        except (MediagenError, OSError) as e:
            logger.error(f'[file-cache] failed to cache {file.filename} for generation {generation_id}: {e}')

    if written:
        logger.info(f'[file-cache] cached {written} file(s) for generation {generation_id}')
    return written
