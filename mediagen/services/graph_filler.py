import copy
import random
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from mediagen.schemas.generation import JobParams
from mediagen.schemas.workflow import FieldMapping, MappingRole


SEED_SENTINEL = -1
SEED_SPAN = 2 ** 32

VISUAL_FORMAT_ERROR = (
    'This appears to be a visual workflow format (has "nodes" and "links"). '
    'Please export the API format instead: in ComfyUI, use "Save (API Format)" '
    'or enable Dev Mode in settings and use "Save (API Format)".'
)

_UNSET = object()


def is_link(value: Any) -> bool:
    """
    [node_id, output_index] reference to another node's output.
    """
    return (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and isinstance(value[0], (str, int))
        and not isinstance(value[0], bool)
        and isinstance(value[1], int)
        and not isinstance(value[1], bool)
    )


def validate_api_format(graph: Any) -> Optional[str]:
    """
    Returns None for an API-format graph, otherwise a human-readable reason.
    """
    if not isinstance(graph, dict):
        return 'JSON must be an object with node IDs as keys'

    if 'nodes' in graph and 'links' in graph:
        return VISUAL_FORMAT_ERROR

    if not graph:
        return 'Workflow has no nodes'

    with_class_type = sum(
        1 for node in graph.values()
        if isinstance(node, dict) and 'class_type' in node
    )
    if with_class_type == 0:
        return (
            'No nodes with class_type found. '
            'This does not appear to be a valid ComfyUI API-format workflow.'
        )
    return None


def validate_mappings(graph: Dict[str, Any], mappings: List[FieldMapping]) -> Optional[str]:
    for mapping in mappings:
        node = graph.get(mapping.node_id)
        if not isinstance(node, dict):
            return f'Mapping "{mapping.label or mapping.field_name}" points at missing node {mapping.node_id}'
        inputs = node.get('inputs')
        if isinstance(inputs, dict) and is_link(inputs.get(mapping.field_name)):
            return (
                f'Mapping "{mapping.label or mapping.field_name}" targets '
                f'{mapping.node_id}.{mapping.field_name}, which is linked to another node'
            )
    return None


def random_seed() -> int:
    return random.randint(0, SEED_SPAN - 1)


class _FillContext:
    __slots__ = ('params', 'active_prompt', 'negative_prompt', 'input_filename', '_seed')

    def __init__(
            self,
            params: JobParams,
            active_prompt: str,
            negative_prompt: str,
            input_filename: Optional[str]
    ):
        self.params = params
        self.active_prompt = active_prompt
        self.negative_prompt = negative_prompt
        self.input_filename = input_filename
        self._seed: Optional[int] = None

    @property
    def seed(self) -> int:
        # drawn once per submission, shared by every seed mapping
        if self._seed is None:
            if self.params.seed == SEED_SENTINEL:
                self._seed = random_seed()
            else:
                self._seed = self.params.seed
        return self._seed


# each resolver returns the literal to write, or _UNSET to leave the template value
Resolver = Callable[[FieldMapping, _FillContext], Any]


def _from_params(mapping: FieldMapping, ctx: _FillContext) -> Any:
    return ctx.params.lookup(mapping.field_name, _UNSET)


def _uploaded_file(mapping: FieldMapping, ctx: _FillContext) -> Any:
    return ctx.input_filename if ctx.input_filename else _UNSET


ROLE_RESOLVERS: Dict[MappingRole, Resolver] = {
    MappingRole.PROMPT: lambda m, ctx: ctx.active_prompt,
    MappingRole.NEGATIVE_PROMPT: lambda m, ctx: ctx.negative_prompt,
    MappingRole.WIDTH: lambda m, ctx: ctx.params.width,
    MappingRole.HEIGHT: lambda m, ctx: ctx.params.height,
    MappingRole.STEPS: lambda m, ctx: ctx.params.steps,
    MappingRole.CFG: lambda m, ctx: ctx.params.cfg_scale,
    MappingRole.SEED: lambda m, ctx: ctx.seed,
    MappingRole.CHECKPOINT: _from_params,
    MappingRole.IMAGE_UPLOAD: _uploaded_file,
    MappingRole.SAMPLER: _from_params,
    MappingRole.SCHEDULER: _from_params,
    MappingRole.CUSTOM: _from_params,
}

_missing_roles = set(MappingRole) - set(ROLE_RESOLVERS)
if _missing_roles:
    raise RuntimeError(f'graph_filler: no resolver for roles {sorted(r.value for r in _missing_roles)}')


def fill_workflow(
        template: Dict[str, Any],
        mappings: List[FieldMapping],
        params: JobParams,
        prompt: str,
        negative_prompt: Optional[str] = None,
        enhanced_prompt: Optional[str] = None,
        input_filename: Optional[str] = None
) -> Dict[str, Any]:
    """
    Returns a filled copy of ``template``; the template itself is never touched.

    Mappings whose node (or its inputs) no longer exists are skipped. Inputs
    that hold a link to another node are never overwritten.
    """
    graph = copy.deepcopy(template)
    ctx = _FillContext(
        params=params,
        active_prompt=enhanced_prompt or prompt,
        negative_prompt=negative_prompt or '',
        input_filename=input_filename
    )

    for mapping in mappings:
        node = graph.get(mapping.node_id)
        if not isinstance(node, dict):
            continue
        inputs = node.get('inputs')
        if not isinstance(inputs, dict):
            continue

        if is_link(inputs.get(mapping.field_name)):
            logger.debug(f'Skip mapping {mapping.node_id}.{mapping.field_name}: input is a link')
            continue

        value = ROLE_RESOLVERS[mapping.role](mapping, ctx)
        if value is _UNSET:
            continue
        inputs[mapping.field_name] = value

    return graph
