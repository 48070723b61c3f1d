# compound_sync/format_standardizer.py
"""
Conversion between the in-memory volume shape and the portable (on-disk) shape.

In memory a volume carries 'position', 'rotation' and flat, type-specific
dimension fields ('size', 'radius', 'z_sections', ...). On disk the same volume
carries a single 'placement' block and a single 'dimensions' block whose keys
depend on the volume type. Both directions are pure: inputs are never mutated.
"""
import copy
import logging

from .errors import TemplateValidationError
from .expression_evaluator import ExpressionEvaluator
from .volume_types import SCALAR_DIMENSION_FIELDS, RAW_DIMENSION_KEYS, VOLUME_TYPES, normalize_keys

logger = logging.getLogger(__name__)

AXES = ('x', 'y', 'z')
MAPPED_TYPES = set(VOLUME_TYPES)

_default_evaluator = None

def _get_evaluator(evaluator):
    global _default_evaluator
    if evaluator is not None:
        return evaluator
    if _default_evaluator is None:
        _default_evaluator = ExpressionEvaluator()
    return _default_evaluator

def _number(value, evaluator, volume_name, field):
    try:
        return evaluator.to_number(value)
    except ValueError as e:
        raise TemplateValidationError(f"Volume '{volume_name}': invalid value for '{field}': {e}") from e

def _vector(data, evaluator, volume_name, field):
    data = data or {}
    if not isinstance(data, dict):
        raise TemplateValidationError(f"Volume '{volume_name}': '{field}' must be an object with x, y, z")
    return {axis: _number(data.get(axis, 0), evaluator, volume_name, f"{field}.{axis}") for axis in AXES}

def _build_placement(volume, evaluator, volume_name):
    placement = _vector(volume.get('position'), evaluator, volume_name, 'position')
    placement['rotation'] = _vector(volume.get('rotation'), evaluator, volume_name, 'rotation')
    return placement

def _build_dimensions(volume, evaluator, volume_name):
    vol_type = volume.get('type')
    dimensions = {}

    if vol_type == 'box':
        if volume.get('size') is not None:
            dimensions.update(_vector(volume['size'], evaluator, volume_name, 'size'))

    elif vol_type == 'polycone':
        sections = volume.get('z_sections')
        if sections is not None:
            if not isinstance(sections, list):
                raise TemplateValidationError(f"Volume '{volume_name}': 'z_sections' must be a list")
            # Unzip the section list into index-aligned arrays
            dimensions['z'] = [_number(s.get('z', 0), evaluator, volume_name, 'z_sections.z') for s in sections]
            dimensions['rmin'] = [_number(s.get('rmin', 0), evaluator, volume_name, 'z_sections.rmin') for s in sections]
            dimensions['rmax'] = [_number(s.get('rmax', 0), evaluator, volume_name, 'z_sections.rmax') for s in sections]

    else:
        for internal_key, portable_key in SCALAR_DIMENSION_FIELDS.get(vol_type, []):
            if volume.get(internal_key) is not None:
                dimensions[portable_key] = _number(volume[internal_key], evaluator, volume_name, internal_key)

    return dimensions

def to_portable(volume, evaluator=None):
    """
    Returns the portable form of an in-memory volume.
    A volume that is already portable is returned as a normalized copy.
    """
    evaluator = _get_evaluator(evaluator)
    portable = normalize_keys(copy.deepcopy(volume))
    name = portable.get('name', '<unnamed>')
    vol_type = portable.get('type')

    if 'position' in portable or 'rotation' in portable or 'placement' not in portable:
        portable['placement'] = _build_placement(portable, evaluator, name)
    portable.pop('position', None)
    portable.pop('rotation', None)

    if vol_type not in MAPPED_TYPES:
        logger.warning("Volume '%s' has unknown type '%s'; its fields are kept as-is.", name, vol_type)
        portable.setdefault('dimensions', {})
        return portable

    has_raw_fields = any(key in portable for key in RAW_DIMENSION_KEYS)
    if has_raw_fields or 'dimensions' not in portable:
        portable['dimensions'] = _build_dimensions(portable, evaluator, name)
    for key in RAW_DIMENSION_KEYS:
        portable.pop(key, None)

    return portable

def to_internal(portable_volume, evaluator=None):
    """
    Returns the in-memory form of a portable volume.

    Raises TemplateValidationError if the 'placement' or 'dimensions' block is
    missing: such data never went through to_portable and is not trusted.
    """
    if not isinstance(portable_volume, dict):
        raise TemplateValidationError("Volume entry must be an object")

    evaluator = _get_evaluator(evaluator)
    volume = normalize_keys(copy.deepcopy(portable_volume))
    name = volume.get('name', '<unnamed>')
    vol_type = volume.get('type')

    placement = volume.pop('placement', None)
    if not isinstance(placement, dict):
        raise TemplateValidationError(f"Volume '{name}' is missing its required 'placement' block")
    dimensions = volume.pop('dimensions', None)
    if not isinstance(dimensions, dict):
        raise TemplateValidationError(f"Volume '{name}' is missing its required 'dimensions' block")

    volume['position'] = _vector({axis: placement.get(axis, 0) for axis in AXES}, evaluator, name, 'placement')
    volume['rotation'] = _vector(placement.get('rotation'), evaluator, name, 'placement.rotation')

    if vol_type == 'box':
        if dimensions:
            volume['size'] = {
                axis: _number(dimensions[axis], evaluator, name, f"dimensions.{axis}")
                for axis in AXES if axis in dimensions
            }

    elif vol_type == 'polycone':
        if dimensions:
            z_values = dimensions.get('z', [])
            rmin_values = dimensions.get('rmin', [])
            rmax_values = dimensions.get('rmax', [])
            if not all(isinstance(v, list) for v in (z_values, rmin_values, rmax_values)):
                raise TemplateValidationError(f"Polycone '{name}': z, rmin and rmax must be arrays")
            if not len(z_values) == len(rmin_values) == len(rmax_values):
                raise TemplateValidationError(
                    f"Polycone '{name}': z, rmin and rmax arrays have different lengths "
                    f"({len(z_values)}, {len(rmin_values)}, {len(rmax_values)})"
                )
            volume['z_sections'] = [
                {
                    'z': _number(z, evaluator, name, 'dimensions.z'),
                    'rmin': _number(rmin, evaluator, name, 'dimensions.rmin'),
                    'rmax': _number(rmax, evaluator, name, 'dimensions.rmax'),
                }
                for z, rmin, rmax in zip(z_values, rmin_values, rmax_values)
            ]

    elif vol_type in SCALAR_DIMENSION_FIELDS:
        for internal_key, portable_key in SCALAR_DIMENSION_FIELDS[vol_type]:
            if portable_key in dimensions:
                volume[internal_key] = _number(dimensions[portable_key], evaluator, name, f"dimensions.{portable_key}")

    elif dimensions:
        # union/assembly have no dimensions; anything else is kept verbatim
        if vol_type in MAPPED_TYPES:
            logger.warning("Volume '%s' of type '%s' carries unexpected dimensions %s; ignoring them.",
                           name, vol_type, sorted(dimensions))
        else:
            volume.update(dimensions)

    return volume

def standardize_template(template, evaluator=None):
    """Applies to_portable to the root object and every descendant of a template."""
    standardized = copy.deepcopy(template)
    if standardized.get('object') is not None:
        standardized['object'] = to_portable(standardized['object'], evaluator)
    if isinstance(standardized.get('descendants'), list):
        standardized['descendants'] = [to_portable(d, evaluator) for d in standardized['descendants']]
    return standardized

def restore_template(template, evaluator=None):
    """
    Applies to_internal to the root object and every descendant of a template.
    The template must have an 'object' and a 'descendants' list.
    """
    validate_template_shape(template)
    restored = copy.deepcopy(template)
    restored['object'] = to_internal(restored['object'], evaluator)
    restored['descendants'] = [to_internal(d, evaluator) for d in restored['descendants']]
    return restored

def validate_template_shape(template):
    if not isinstance(template, dict):
        raise TemplateValidationError("Template must be an object with 'object' and 'descendants'")
    if not isinstance(template.get('object'), dict):
        raise TemplateValidationError("Template is missing its root 'object'")
    if not isinstance(template.get('descendants'), list):
        raise TemplateValidationError("Template is missing its 'descendants' list")
    if not template['object'].get('type'):
        raise TemplateValidationError("Template root object has no 'type'")
    for i, descendant in enumerate(template['descendants']):
        if not isinstance(descendant, dict):
            raise TemplateValidationError(f"Template descendant #{i} is not an object")
        if not descendant.get('type'):
            raise TemplateValidationError(f"Template descendant '{descendant.get('name', i)}' has no 'type'")

def is_portable(volume):
    return isinstance(volume, dict) and 'placement' in volume and 'dimensions' in volume
