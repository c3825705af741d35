import copy

import pytest

from mediagen.schemas.generation import JobParams
from mediagen.schemas.workflow import FieldMapping, MappingRole
from mediagen.services import graph_filler
from mediagen.services.graph_filler import (
    ROLE_RESOLVERS,
    fill_workflow,
    is_link,
    validate_api_format,
    validate_mappings,
)


@pytest.fixture()
def mappings(txt2img_mappings):
    return [FieldMapping.model_validate(m) for m in txt2img_mappings]


def test_fill_never_mutates_template(txt2img_graph, mappings):
    pristine = copy.deepcopy(txt2img_graph)

    first = fill_workflow(txt2img_graph, mappings, JobParams(width=768, seed=1), 'a dog')
    second = fill_workflow(txt2img_graph, mappings, JobParams(width=1024, seed=2), 'a fox')

    assert txt2img_graph == pristine
    assert first['5']['inputs']['width'] == 768
    assert second['5']['inputs']['width'] == 1024
    assert first['6']['inputs']['text'] == 'a dog'
    assert second['6']['inputs']['text'] == 'a fox'


def test_fill_substitutes_core_roles(txt2img_graph, mappings):
    params = JobParams.model_validate({'width': 640, 'height': 480, 'steps': 8, 'cfgScale': 3.5, 'seed': 7})

    graph = fill_workflow(txt2img_graph, mappings, params, 'a cat', negative_prompt='ugly')

    assert graph['5']['inputs'] == {'width': 640, 'height': 480, 'batch_size': 1}
    assert graph['3']['inputs']['steps'] == 8
    assert graph['3']['inputs']['cfg'] == 3.5
    assert graph['3']['inputs']['seed'] == 7
    assert graph['7']['inputs']['text'] == 'ugly'


def test_enhanced_prompt_wins_and_negative_defaults_to_empty(txt2img_graph, mappings):
    graph = fill_workflow(txt2img_graph, mappings, JobParams(), 'short', enhanced_prompt='long and detailed')

    assert graph['6']['inputs']['text'] == 'long and detailed'
    assert graph['7']['inputs']['text'] == ''


def test_seed_sentinel_draws_unsigned_32_bit_values(txt2img_graph, mappings):
    seeds = {
        fill_workflow(txt2img_graph, mappings, JobParams(seed=-1), 'x')['3']['inputs']['seed']
        for _ in range(20)
    }

    assert all(0 <= s < 2 ** 32 for s in seeds)
    assert len(seeds) > 1


def test_seed_is_drawn_once_per_submission(txt2img_graph):
    template = copy.deepcopy(txt2img_graph)
    template['10'] = {'class_type': 'KSampler', 'inputs': {'seed': 0}}
    mappings = [
        FieldMapping(node_id='3', field_name='seed', role=MappingRole.SEED),
        FieldMapping(node_id='10', field_name='seed', role=MappingRole.SEED),
    ]

    graph = fill_workflow(template, mappings, JobParams(seed=-1), 'x')

    assert graph['3']['inputs']['seed'] == graph['10']['inputs']['seed']


def test_explicit_seed_is_used_verbatim(txt2img_graph, mappings):
    graph = fill_workflow(txt2img_graph, mappings, JobParams(seed=123456789), 'x')

    assert graph['3']['inputs']['seed'] == 123456789


def test_checkpoint_only_overwritten_when_provided(txt2img_graph, mappings):
    untouched = fill_workflow(txt2img_graph, mappings, JobParams(), 'x')
    chosen = fill_workflow(
        txt2img_graph, mappings, JobParams.model_validate({'ckpt_name': 'sdxl.safetensors'}), 'x'
    )
    explicit_none = fill_workflow(
        txt2img_graph, mappings, JobParams.model_validate({'ckpt_name': None}), 'x'
    )

    assert untouched['4']['inputs']['ckpt_name'] == 'base.safetensors'
    assert chosen['4']['inputs']['ckpt_name'] == 'sdxl.safetensors'
    assert explicit_none['4']['inputs']['ckpt_name'] == 'base.safetensors'


def test_custom_and_sampler_roles_read_params_by_field_name(txt2img_graph):
    mappings = [
        FieldMapping(node_id='3', field_name='sampler_name', role=MappingRole.SAMPLER),
        FieldMapping(node_id='3', field_name='scheduler', role=MappingRole.SCHEDULER),
        FieldMapping(node_id='5', field_name='batch_size', role=MappingRole.CUSTOM),
    ]
    params = JobParams.model_validate({'sampler_name': 'dpmpp_2m', 'batch_size': 4})

    graph = fill_workflow(txt2img_graph, mappings, params, 'x')

    assert graph['3']['inputs']['sampler_name'] == 'dpmpp_2m'
    assert graph['3']['inputs']['scheduler'] == 'normal'
    assert graph['5']['inputs']['batch_size'] == 4


def test_image_upload_only_when_filename_given():
    template = {'12': {'class_type': 'LoadImage', 'inputs': {'image': 'example.png'}}}
    mappings = [FieldMapping(node_id='12', field_name='image', role=MappingRole.IMAGE_UPLOAD)]

    without = fill_workflow(template, mappings, JobParams(), 'x')
    with_file = fill_workflow(template, mappings, JobParams(), 'x', input_filename='uploads/me.png')

    assert without['12']['inputs']['image'] == 'example.png'
    assert with_file['12']['inputs']['image'] == 'uploads/me.png'


def test_links_are_never_overwritten(txt2img_graph):
    mappings = [FieldMapping(node_id='3', field_name='positive', role=MappingRole.PROMPT)]

    graph = fill_workflow(txt2img_graph, mappings, JobParams(), 'hello')

    assert graph['3']['inputs']['positive'] == ['6', 0]


def test_stale_mappings_are_skipped(txt2img_graph):
    template = copy.deepcopy(txt2img_graph)
    template['20'] = {'class_type': 'Note'}
    mappings = [
        FieldMapping(node_id='99', field_name='text', role=MappingRole.PROMPT),
        FieldMapping(node_id='20', field_name='text', role=MappingRole.PROMPT),
    ]

    graph = fill_workflow(template, mappings, JobParams(), 'hello')

    assert '99' not in graph
    assert graph['20'] == {'class_type': 'Note'}


def test_every_role_has_a_resolver():
    assert set(ROLE_RESOLVERS) == set(MappingRole)


def test_legacy_ui_type_key_is_accepted():
    mapping = FieldMapping.model_validate({'nodeId': '6', 'fieldName': 'text', 'uiType': 'prompt'})

    assert mapping.role is MappingRole.PROMPT


def test_is_link():
    assert is_link(['4', 0])
    assert is_link([4, 1])
    assert not is_link('4')
    assert not is_link([1.0, 2.0])
    assert not is_link(['a', 'b'])
    assert not is_link([True, 0])


@pytest.mark.parametrize('graph, message', [
    ([], 'JSON must be an object with node IDs as keys'),
    ('text', 'JSON must be an object with node IDs as keys'),
    ({}, 'Workflow has no nodes'),
    ({'nodes': [], 'links': []}, graph_filler.VISUAL_FORMAT_ERROR),
    ({'1': {'inputs': {}}}, 'No nodes with class_type found'),
])
def test_validate_api_format_rejects(graph, message):
    error = validate_api_format(graph)

    assert error is not None
    assert error.startswith(message)


def test_validate_api_format_accepts_api_graph(txt2img_graph):
    assert validate_api_format(txt2img_graph) is None


def test_validate_mappings(txt2img_graph, mappings):
    assert validate_mappings(txt2img_graph, mappings) is None

    missing = [FieldMapping(node_id='77', field_name='text', role=MappingRole.PROMPT, label='Prompt')]
    linked = [FieldMapping(node_id='3', field_name='model', role=MappingRole.CUSTOM)]

    assert 'missing node 77' in validate_mappings(txt2img_graph, missing)
    assert 'linked to another node' in validate_mappings(txt2img_graph, linked)
