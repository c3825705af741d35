"""
Interpretation of a ComfyUI ``/history/{prompt_id}`` entry.

ComfyUI reports completion inconsistently across node packs: some entries
carry ``status.completed``, some only ``status_str == 'success'`` and some
only the produced files. Any one of the three is taken as completion, but an
``error`` status always wins.
"""
import os
from typing import Any, Dict, Iterable, List, Optional

from mediagen.core.errors import EngineExecutionError
from mediagen.schemas.generation import HistoryResult, OutputFile


VIDEO_EXTENSIONS = frozenset({'mp4', 'webm', 'avi', 'mov', 'mkv'})
KNOWN_OUTPUT_KEYS = ('images', 'gifs', 'videos')
# boolean metadata emitted by SaveAnimatedWEBP, not a file list
IGNORED_OUTPUT_KEYS = frozenset({'animated'})

GENERIC_ENGINE_ERROR = 'ComfyUI reported an error for this generation'


def media_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lstrip('.').lower()
    return 'video' if ext in VIDEO_EXTENSIONS else 'image'


def _is_file_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and isinstance(value[0], dict)
        and bool(value[0].get('filename'))
    )


def _iter_file_items(node_output: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for key in KNOWN_OUTPUT_KEYS:
        items = node_output.get(key)
        if isinstance(items, list):
            yield from items

    for key, value in node_output.items():
        if key in KNOWN_OUTPUT_KEYS or key in IGNORED_OUTPUT_KEYS:
            continue
        if _is_file_list(value):
            yield from value


def extract_outputs(outputs: Any) -> List[OutputFile]:
    """
    Flattens per-node outputs into one list, deduplicated by filename in
    first-seen order.
    """
    if not isinstance(outputs, dict):
        return []

    seen = set()
    files: List[OutputFile] = []
    for node_output in outputs.values():
        if not isinstance(node_output, dict):
            continue

        for item in _iter_file_items(node_output):
            if not isinstance(item, dict):
                continue
            filename = item.get('filename')
            if not filename or filename in seen:
                continue
            seen.add(filename)

            file_type = item.get('type')
            files.append(OutputFile(
                filename=filename,
                subfolder=item.get('subfolder') or '',
                type=file_type if file_type in ('output', 'temp') else 'output',
                media_type=media_type_for(filename)
            ))
    return files


def extract_error(status: Dict[str, Any]) -> str:
    messages = status.get('messages')
    if messages is None:
        messages = status.get('status_messages')
    if not isinstance(messages, list):
        return GENERIC_ENGINE_ERROR

    for message in messages:
        if not isinstance(message, (list, tuple)) or len(message) < 2:
            continue
        msg_type, msg_data = message[0], message[1]
        if msg_type != 'execution_error' or not isinstance(msg_data, dict):
            continue

        error = EngineExecutionError(
            msg_data.get('exception_message'),
            msg_data.get('node_id'),
            msg_data.get('node_type')
        )
        return error.detail or GENERIC_ENGINE_ERROR
    return GENERIC_ENGINE_ERROR


def interpret_history(entry: Optional[Dict[str, Any]]) -> HistoryResult:
    if not entry:
        return HistoryResult(completed=False, outputs=[])

    status = entry.get('status')
    if not isinstance(status, dict):
        status = {}

    status_str = status.get('status_str') or 'unknown'
    if status_str == 'error':
        return HistoryResult(
            completed=False,
            outputs=[],
            status='error',
            error=extract_error(status)
        )

    outputs = extract_outputs(entry.get('outputs'))
    completed = bool(status.get('completed')) or status_str == 'success' or len(outputs) > 0
    return HistoryResult(completed=completed, outputs=outputs, status=status_str)
