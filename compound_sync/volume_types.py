# compound_sync/volume_types.py
"""
Field layout of scene volumes.

Volumes are plain dicts. This module is the single place that says which keys
are identity/placement (always kept by the target of a synchronization) and
which keys are shape (copied from the source).
"""

WORLD_ID = "world"
WORLD_NAME = "World"
VOLUME_ID_PREFIX = "volume-"

VOLUME_TYPES = (
    'box', 'cylinder', 'sphere', 'trapezoid', 'torus',
    'ellipsoid', 'polycone', 'union', 'assembly'
)

# In-memory scalar field -> portable 'dimensions' key, per type.
# Box (size{x,y,z}) and polycone (z_sections) are handled separately.
SCALAR_DIMENSION_FIELDS = {
    'sphere': [('radius', 'radius')],
    'cylinder': [('radius', 'radius'), ('inner_radius', 'inner_radius'), ('height', 'height')],
    'trapezoid': [('dx1', 'dx1'), ('dx2', 'dx2'), ('dy1', 'dy1'), ('dy2', 'dy2'), ('dz', 'dz')],
    'torus': [('major_radius', 'major_radius'), ('minor_radius', 'minor_radius')],
    'ellipsoid': [('x_radius', 'x_radius'), ('y_radius', 'y_radius'), ('z_radius', 'z_radius')],
}

# Every top-level key that holds a type-specific dimension in memory.
# The standardizer deletes all of them so both shapes never coexist.
RAW_DIMENSION_KEYS = (
    'size', 'radius', 'inner_radius', 'height',
    'dx1', 'dx2', 'dy1', 'dy2', 'dz',
    'major_radius', 'minor_radius',
    'x_radius', 'y_radius', 'z_radius',
    'z_sections',
)

# Kept from the target root when a source is propagated onto it.
ROOT_IDENTITY_FIELDS = (
    'name', 'mother_volume', 'position', 'rotation',
    'compound_id', 'assembly_id', 'instance_id', 'display_name', 'g4name',
)

# Kept from the target descendant. 'mother_volume' keeps nested parts
# attached to their own parent inside the instance; the group ids keep
# them in their own instance's compound.
COMPONENT_IDENTITY_FIELDS = (
    'name', 'mother_volume', 'component_id', 'display_name', 'g4name',
    'compound_id', 'assembly_id', 'instance_id',
)

# Older saves used camelCase / underscore-prefixed keys.
LEGACY_KEY_ALIASES = {
    '_componentId': 'component_id',
    'componentId': 'component_id',
    '_compoundId': 'compound_id',
    'compoundId': 'compound_id',
    '_assemblyId': 'assembly_id',
    'assemblyId': 'assembly_id',
    '_instanceId': 'instance_id',
    'instanceId': 'instance_id',
    'displayName': 'display_name',
    'motherVolume': 'mother_volume',
    'parent': 'mother_volume',
    'innerRadius': 'inner_radius',
    'majorRadius': 'major_radius',
    'minorRadius': 'minor_radius',
    'xRadius': 'x_radius',
    'yRadius': 'y_radius',
    'zRadius': 'z_radius',
    'zSections': 'z_sections',
}


def normalize_keys(volume):
    """
    Returns a shallow copy of a volume with legacy keys renamed.
    A canonical key already present wins over its alias.
    """
    normalized = {}
    for key, value in volume.items():
        canonical = LEGACY_KEY_ALIASES.get(key, key)
        if canonical != key and canonical in volume:
            continue
        normalized[canonical] = value

    sections = normalized.get('z_sections')
    if isinstance(sections, list):
        normalized['z_sections'] = [
            {
                'z': s.get('z', 0),
                'rmin': s.get('rmin', s.get('rMin', 0)),
                'rmax': s.get('rmax', s.get('rMax', 0)),
            } if isinstance(s, dict) else s
            for s in sections
        ]
    return normalized


def get_field(volume, key, default=None):
    """Reads a canonical key, falling back to any legacy alias of it."""
    if not volume:
        return default
    if key in volume:
        return volume[key]
    for alias, canonical in LEGACY_KEY_ALIASES.items():
        if canonical == key and alias in volume:
            return volume[alias]
    return default


def volume_id_for_index(index):
    return f"{VOLUME_ID_PREFIX}{index}"


def index_from_volume_id(volume_id):
    """'volume-3' -> 3. Returns None for anything else (including 'world')."""
    if not isinstance(volume_id, str) or not volume_id.startswith(VOLUME_ID_PREFIX):
        return None
    try:
        return int(volume_id[len(VOLUME_ID_PREFIX):])
    except ValueError:
        return None


def default_world():
    return {
        'type': 'box',
        'name': WORLD_NAME,
        'material': 'G4_AIR',
        'size': {'x': 200.0, 'y': 200.0, 'z': 200.0},
        'position': {'x': 0.0, 'y': 0.0, 'z': 0.0},
        'rotation': {'x': 0.0, 'y': 0.0, 'z': 0.0},
    }
