# compound_sync/scene_tree.py
import copy
import logging
from collections import Counter

from .errors import CompoundError, DuplicateNameError, VolumeNotFoundError
from .volume_types import (
    WORLD_ID, WORLD_NAME, default_world, get_field,
    index_from_volume_id, volume_id_for_index,
)

logger = logging.getLogger(__name__)

# Keys that are merged key-by-key by update_volume instead of replaced
NESTED_MERGE_KEYS = ('position', 'rotation', 'size', 'dimensions')


# --- Pure helpers over a volume list ---

def find_all_descendants(root_name, volumes):
    """
    Returns every volume whose mother_volume chain leads back to root_name,
    in volume-list order. Depth is unbounded so nested assemblies are included.
    """
    children_by_parent = {}
    for vol in volumes:
        parent = get_field(vol, 'mother_volume')
        if parent is not None:
            children_by_parent.setdefault(parent, []).append(vol)

    found_names = set()
    visited = {root_name}
    queue = [root_name]
    while queue:
        parent = queue.pop(0)
        for child in children_by_parent.get(parent, []):
            child_name = child.get('name')
            if child_name in visited:
                continue
            visited.add(child_name)
            found_names.add(child_name)
            queue.append(child_name)

    return [vol for vol in volumes if vol.get('name') in found_names]


def build_type_histogram(volumes):
    return Counter(vol.get('type') for vol in volumes)


def collect_component_ids(volumes):
    """Set of non-empty component ids present in a volume list."""
    ids = set()
    for vol in volumes:
        component_id = get_field(vol, 'component_id')
        if component_id:
            ids.add(component_id)
    return ids


def has_children(name, volumes):
    return any(get_field(vol, 'mother_volume') == name for vol in volumes)


def find_dangling_references(volumes, known_names):
    """Returns (volume_name, mother_volume) pairs whose parent does not resolve."""
    dangling = []
    for vol in volumes:
        parent = get_field(vol, 'mother_volume')
        if parent is not None and parent not in known_names:
            dangling.append((vol.get('name'), parent))
    return dangling


def extract_object_with_descendants(root_volume, volumes):
    """
    Deep-copies a root volume and its whole subtree into the
    {'object', 'descendants'} shape used for templates.
    The root's display_name belongs to the placed instance and is dropped.
    """
    root = copy.deepcopy(root_volume)
    root.pop('display_name', None)
    descendants = [copy.deepcopy(v) for v in find_all_descendants(root_volume['name'], volumes)]
    return {'object': root, 'descendants': descendants}


def _merge_patch(volume, patch):
    for key, value in patch.items():
        if key in NESTED_MERGE_KEYS and isinstance(value, dict) and isinstance(volume.get(key), dict):
            volume[key] = {**volume[key], **value}
        else:
            volume[key] = value


class SceneTree:
    """
    The live volume tree: a World volume plus a flat list of volumes linked
    by mother_volume -> name. Volumes are addressed by id ('world' or
    'volume-<index>') and the name index is rebuilt after every structural change.
    """

    def __init__(self, world=None, volumes=None):
        self.world = world if world is not None else default_world()
        self.volumes = list(volumes or [])
        self.selected_id = None
        self._name_index = {}
        self._rebuild_index()

    # --- Index ---

    def _rebuild_index(self, strict=False):
        index = {self.world.get('name', WORLD_NAME): WORLD_ID}
        duplicates = []
        for i, vol in enumerate(self.volumes):
            name = vol.get('name')
            if name in index:
                duplicates.append(name)
                continue
            index[name] = volume_id_for_index(i)
        self._name_index = index

        if duplicates:
            logger.error("Duplicate volume names in scene: %s", sorted(set(duplicates)))
            if strict:
                raise DuplicateNameError(f"Duplicate volume names in scene: {sorted(set(duplicates))}")

    @property
    def world_name(self):
        return self.world.get('name', WORLD_NAME)

    def names(self):
        return set(self._name_index)

    def all_volumes(self):
        return [self.world] + self.volumes

    def get_volume_by_id(self, volume_id):
        if volume_id == WORLD_ID:
            return self.world
        index = index_from_volume_id(volume_id)
        if index is None or not 0 <= index < len(self.volumes):
            return None
        return self.volumes[index]

    def get_volume_by_name(self, name):
        return self.get_volume_by_id(self._name_index.get(name))

    def get_volume_id(self, name):
        return self._name_index.get(name)

    def require_volume(self, volume_id):
        volume = self.get_volume_by_id(volume_id)
        if volume is None:
            raise VolumeNotFoundError(f"Volume '{volume_id}' not found.")
        return volume

    # --- Mutation ---

    def _check_new_volumes(self, new_volumes):
        existing = self.names()
        batch_names = set()
        for vol in new_volumes:
            name = vol.get('name')
            if not name:
                raise CompoundError("Volume has no name.")
            if name in existing or name in batch_names:
                logger.error("Refusing to add volume with duplicate name '%s'", name)
                raise DuplicateNameError(f"A volume named '{name}' already exists.")
            batch_names.add(name)

        for vol in new_volumes:
            parent = get_field(vol, 'mother_volume')
            if parent not in existing and parent not in batch_names:
                raise VolumeNotFoundError(f"Parent volume '{parent}' of '{vol['name']}' not found.")

    def _check_new_parent(self, volume, new_parent):
        """Refuses a mother_volume change that would dangle or close a loop."""
        if new_parent == get_field(volume, 'mother_volume'):
            return
        if new_parent not in self._name_index:
            raise VolumeNotFoundError(f"Parent volume '{new_parent}' of '{volume.get('name')}' not found.")
        subtree = {vol.get('name') for vol in find_all_descendants(volume.get('name'), self.volumes)}
        if new_parent == volume.get('name') or new_parent in subtree:
            raise CompoundError(f"Volume '{volume.get('name')}' cannot be placed inside its own subtree.")

    def add_volume(self, volume, select=True):
        """Appends one volume and returns its id."""
        return self.add_volumes([volume], select=select)[0]

    def add_volumes(self, new_volumes, select=True):
        """
        Appends several volumes in one step. Either every volume is added or,
        on a name clash or unresolved parent, none is. Returns the new ids;
        the first becomes selected.
        """
        prepared = []
        for vol in new_volumes:
            vol = dict(vol)
            vol.setdefault('mother_volume', self.world_name)
            prepared.append(vol)
        self._check_new_volumes(prepared)

        start = len(self.volumes)
        self.volumes.extend(prepared)
        self._rebuild_index()

        ids = [volume_id_for_index(start + i) for i in range(len(prepared))]
        if select and ids:
            self.selected_id = ids[0]
        return ids

    def replace_volume(self, volume_id, new_volume):
        """Swaps a whole volume for a new dict in a single step."""
        old_volume = self.require_volume(volume_id)
        new_name = new_volume.get('name')
        if new_name != old_volume.get('name') and new_name in self._name_index:
            logger.error("Replacing '%s' would duplicate the name '%s'", volume_id, new_name)
            raise DuplicateNameError(f"A volume named '{new_name}' already exists.")
        if volume_id != WORLD_ID:
            self._check_new_parent(old_volume, get_field(new_volume, 'mother_volume'))

        if volume_id == WORLD_ID:
            self.world = new_volume
        else:
            self.volumes[index_from_volume_id(volume_id)] = new_volume
        self._rebuild_index(strict=True)
        return new_volume

    def update_volume(self, volume_id, patch, keep_selected=True, is_live_update=False):
        """
        Merges a patch into a volume. position, rotation, size and dimensions
        are merged key-by-key; a new 'name' goes through rename_volume.
        """
        volume = self.require_volume(volume_id)
        patch = dict(patch or {})
        new_parent = get_field(patch, 'mother_volume')
        if new_parent is not None:
            self._check_new_parent(volume, new_parent)

        new_name = patch.pop('name', None)
        if new_name is not None and new_name != volume.get('name'):
            self.rename_volume(volume_id, new_name)

        _merge_patch(volume, patch)

        if not keep_selected and not is_live_update:
            self.selected_id = volume_id
        return volume

    def rename_volume(self, volume_id, new_name):
        """Renames a volume and rewrites the mother_volume of its direct children."""
        volume = self.require_volume(volume_id)
        if not new_name:
            raise CompoundError("New name cannot be empty.")
        old_name = volume.get('name')
        if new_name == old_name:
            return volume
        if new_name in self._name_index:
            raise DuplicateNameError(f"A volume named '{new_name}' already exists.")

        volume['name'] = new_name
        for vol in self.volumes:
            if get_field(vol, 'mother_volume') == old_name:
                vol.pop('parent', None)
                vol['mother_volume'] = new_name
        self._rebuild_index()
        return volume

    def remove_volume(self, volume_id):
        """
        Removes a volume together with its whole subtree.
        Returns the removed volumes. Ids of later volumes shift down.
        """
        if volume_id == WORLD_ID:
            raise CompoundError("The World volume cannot be removed.")
        volume = self.require_volume(volume_id)

        selected = self.get_volume_by_id(self.selected_id) if self.selected_id else None
        removed = [volume] + find_all_descendants(volume['name'], self.volumes)
        removed_names = {v.get('name') for v in removed}
        self.volumes = [v for v in self.volumes if v.get('name') not in removed_names]
        self._rebuild_index()

        # Ids are positional, so re-resolve the selection by name
        if selected is None or selected.get('name') in removed_names:
            self.selected_id = None
        else:
            self.selected_id = self.get_volume_id(selected.get('name'))
        return removed

    # --- Queries ---

    def get_descendants(self, name):
        return find_all_descendants(name, self.volumes)

    def find_dangling_references(self):
        dangling = find_dangling_references(self.volumes, self.names())
        for name, parent in dangling:
            logger.error("Volume '%s' references missing parent '%s'", name, parent)
        return dangling

    # --- Serialization ---

    def to_dict(self):
        return {
            'world': copy.deepcopy(self.world),
            'volumes': copy.deepcopy(self.volumes),
            'selected_id': self.selected_id,
        }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        instance = cls(world=copy.deepcopy(data.get('world')), volumes=copy.deepcopy(data.get('volumes', [])))
        selected_id = data.get('selected_id')
        if selected_id is not None and instance.get_volume_by_id(selected_id) is not None:
            instance.selected_id = selected_id
        return instance
