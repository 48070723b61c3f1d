import copy
import pytest

from compound_sync.errors import TemplateValidationError
from compound_sync.format_standardizer import (
    to_portable, to_internal, standardize_template, restore_template, is_portable
)

ZERO = {'x': 0.0, 'y': 0.0, 'z': 0.0}

def _volume(vol_type, position=None, rotation=None, **fields):
    vol = {
        'name': f'{vol_type}_1',
        'type': vol_type,
        'mother_volume': 'World',
        'material': 'G4_Si',
        'position': position or dict(ZERO),
        'rotation': rotation or dict(ZERO),
    }
    vol.update(fields)
    return vol

def _sections(count):
    return [{'z': float(i * 10), 'rmin': float(i), 'rmax': float(i + 5)} for i in range(count)]

ROUND_TRIP_CASES = [
    _volume('box', size={'x': 10.0, 'y': 20.0, 'z': 30.0}),
    _volume('box', size=dict(ZERO)),
    _volume('sphere', radius=12.5),
    _volume('sphere', radius=0.0),
    _volume('cylinder', radius=5.0, inner_radius=1.0, height=40.0),
    _volume('cylinder', radius=0.0, inner_radius=0.0, height=0.0),
    _volume('trapezoid', dx1=1.0, dx2=2.0, dy1=3.0, dy2=4.0, dz=5.0),
    _volume('torus', major_radius=50.0, minor_radius=5.0),
    _volume('ellipsoid', x_radius=1.0, y_radius=2.0, z_radius=3.0),
    _volume('polycone', z_sections=_sections(2)),
    _volume('polycone', z_sections=_sections(5)),
    _volume('union'),
    _volume('assembly', position={'x': 1.0, 'y': -2.0, 'z': 3.5}, rotation={'x': 0.1, 'y': 0.2, 'z': 0.3}),
]

@pytest.mark.parametrize("volume", ROUND_TRIP_CASES, ids=lambda v: v['type'])
def test_round_trip(volume):
    assert to_internal(to_portable(volume)) == volume

def test_portable_shape_for_box():
    vol = _volume('box', position={'x': 1.0, 'y': 2.0, 'z': 3.0}, size={'x': 10.0, 'y': 20.0, 'z': 30.0},
                  component_id='component_1')
    portable = to_portable(vol)

    assert portable['placement'] == {'x': 1.0, 'y': 2.0, 'z': 3.0, 'rotation': ZERO}
    assert portable['dimensions'] == {'x': 10.0, 'y': 20.0, 'z': 30.0}
    assert 'position' not in portable
    assert 'rotation' not in portable
    assert 'size' not in portable
    # Identity keys are carried through untouched
    assert portable['component_id'] == 'component_1'
    assert portable['mother_volume'] == 'World'

def test_polycone_arrays_are_index_aligned():
    vol = _volume('polycone', z_sections=_sections(3))
    dims = to_portable(vol)['dimensions']
    assert dims == {'z': [0.0, 10.0, 20.0], 'rmin': [0.0, 1.0, 2.0], 'rmax': [5.0, 6.0, 7.0]}

def test_to_portable_does_not_mutate_input():
    vol = _volume('polycone', z_sections=_sections(2))
    snapshot = copy.deepcopy(vol)
    portable = to_portable(vol)
    portable['dimensions']['z'].append(99.0)
    portable['placement']['x'] = 42.0
    assert vol == snapshot

def test_to_internal_does_not_mutate_input():
    portable = to_portable(_volume('sphere', radius=3.0))
    snapshot = copy.deepcopy(portable)
    to_internal(portable)
    assert portable == snapshot

def test_unit_expressions_are_evaluated():
    vol = _volume('cylinder', radius="5*cm", height="2*m", inner_radius=0)
    vol['rotation'] = {'x': '0', 'y': '0', 'z': '0'}
    dims = to_portable(vol)['dimensions']
    assert dims == {'radius': 50.0, 'inner_radius': 0.0, 'height': 2000.0}

def test_bad_expression_is_a_validation_error():
    with pytest.raises(TemplateValidationError):
        to_portable(_volume('sphere', radius="five"))

def test_legacy_keys_are_normalized():
    legacy = {
        'name': 'tube', 'type': 'cylinder', 'parent': 'World',
        'position': dict(ZERO), 'rotation': dict(ZERO),
        'radius': 2.0, 'innerRadius': 1.0, 'height': 3.0, '_componentId': 'component_9',
    }
    portable = to_portable(legacy)
    assert portable['mother_volume'] == 'World'
    assert portable['component_id'] == 'component_9'
    assert portable['dimensions'] == {'radius': 2.0, 'inner_radius': 1.0, 'height': 3.0}
    assert 'innerRadius' not in portable

def test_to_portable_is_idempotent():
    portable = to_portable(_volume('torus', major_radius=10.0, minor_radius=1.0))
    assert to_portable(portable) == portable

@pytest.mark.parametrize("missing", ['placement', 'dimensions'])
def test_to_internal_requires_blocks(missing):
    portable = to_portable(_volume('box', size={'x': 1.0, 'y': 1.0, 'z': 1.0}))
    del portable[missing]
    with pytest.raises(TemplateValidationError):
        to_internal(portable)

def test_to_internal_rejects_misaligned_polycone():
    portable = {
        'name': 'pc', 'type': 'polycone',
        'placement': {'x': 0, 'y': 0, 'z': 0},
        'dimensions': {'z': [0, 1, 2], 'rmin': [0, 0], 'rmax': [1, 1, 1]},
    }
    with pytest.raises(TemplateValidationError):
        to_internal(portable)

def test_to_internal_fills_missing_rotation():
    portable = {'name': 's', 'type': 'sphere', 'placement': {'x': 1, 'y': 2, 'z': 3}, 'dimensions': {'radius': 4}}
    internal = to_internal(portable)
    assert internal['position'] == {'x': 1.0, 'y': 2.0, 'z': 3.0}
    assert internal['rotation'] == ZERO
    assert internal['radius'] == 4.0

def test_template_round_trip():
    template = {
        'object': _volume('box', size={'x': 10.0, 'y': 10.0, 'z': 10.0}),
        'descendants': [
            _volume('cylinder', radius=1.0, inner_radius=0.0, height=4.0, mother_volume='box_1'),
            _volume('polycone', z_sections=_sections(2), mother_volume='box_1'),
        ],
        'metadata': {'name': 'Detector'},
    }
    portable = standardize_template(template)
    assert is_portable(portable['object'])
    assert all(is_portable(d) for d in portable['descendants'])
    assert portable['metadata'] == {'name': 'Detector'}
    assert restore_template(portable) == template

@pytest.mark.parametrize("bad_template", [
    None,
    {'descendants': []},
    {'object': {'type': 'box', 'placement': {}, 'dimensions': {}}},
    {'object': {'placement': {}, 'dimensions': {}}, 'descendants': []},
])
def test_restore_template_rejects_malformed(bad_template):
    with pytest.raises(TemplateValidationError):
        restore_template(bad_template)
