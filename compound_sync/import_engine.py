# compound_sync/import_engine.py
import logging

from .errors import TemplateValidationError, VolumeNotFoundError
from .format_standardizer import restore_template, validate_template_shape
from .identity import generate_component_id, generate_instance_id, generate_unique_name
from .volume_types import get_field

logger = logging.getLogger(__name__)


def next_display_name(base_name, used_display_names):
    """'<base>_<n>' with the lowest n >= 1 not already in use."""
    serial = 1
    while f"{base_name}_{serial}" in used_display_names:
        serial += 1
    return f"{base_name}_{serial}"


def _check_unique_descendant_names(root_name, descendants):
    seen = set()
    if root_name:
        seen.add(root_name)
    for descendant in descendants:
        name = descendant.get('name')
        if not name:
            continue
        if name in seen:
            raise TemplateValidationError(f"Template contains the volume name '{name}' more than once.")
        seen.add(name)


def import_template(template, target_parent_name, scene, metadata_name=None, evaluator=None):
    """
    Inserts a template into the scene under target_parent_name with fresh names.

    Every volume gets a new unique name; mother_volume references inside the
    template are rewritten through the resulting name map, so the template's
    internal topology survives. component_id values are kept when present and
    minted otherwise. Nothing is added to the scene unless the whole template
    is valid.

    Returns:
        dict with 'root_id', 'root_name', 'name_map' (template name -> new name),
        'instance_id', 'compound_id' and 'volume_ids'.
    """
    validate_template_shape(template)
    if scene.get_volume_by_name(target_parent_name) is None:
        raise VolumeNotFoundError(f"Target parent volume '{target_parent_name}' not found.")

    restored = restore_template(template, evaluator)
    root = restored['object']
    descendants = restored['descendants']
    original_root_name = root.get('name')
    _check_unique_descendant_names(original_root_name, descendants)

    taken_names = scene.names()

    # Pass 1: fresh names for the root and every descendant
    new_root_name = generate_unique_name(root.get('type'), taken_names)
    taken_names.add(new_root_name)

    compound_id = root.get('compound_id') or new_root_name
    instance_id = generate_instance_id()

    root['name'] = new_root_name
    root['mother_volume'] = target_parent_name
    root['compound_id'] = compound_id
    root['instance_id'] = instance_id
    if root.get('type') == 'assembly' and not root.get('assembly_id'):
        root['assembly_id'] = new_root_name

    if metadata_name:
        used_display_names = {v.get('display_name') for v in scene.all_volumes() if v.get('display_name')}
        root['display_name'] = next_display_name(metadata_name, used_display_names)

    name_map = {}
    for descendant in descendants:
        original_name = descendant.get('name')
        new_name = generate_unique_name(descendant.get('type'), taken_names)
        taken_names.add(new_name)
        if original_name:
            name_map[original_name] = new_name
            descendant.setdefault('display_name', original_name)
        descendant['name'] = new_name

        if not get_field(descendant, 'component_id'):
            descendant['component_id'] = generate_component_id()
        descendant['compound_id'] = compound_id
        if root.get('assembly_id'):
            descendant['assembly_id'] = root['assembly_id']
        descendant.pop('instance_id', None)

    # Pass 2: rewire parents now that every rename is known
    for descendant in descendants:
        parent = get_field(descendant, 'mother_volume')
        descendant.pop('parent', None)
        if parent is not None and parent == original_root_name:
            descendant['mother_volume'] = new_root_name
        elif parent in name_map:
            descendant['mother_volume'] = name_map[parent]
        else:
            logger.warning(
                "Template volume '%s' refers to unknown parent '%s'; attaching it to '%s'.",
                descendant.get('display_name', descendant['name']), parent, new_root_name,
            )
            descendant['mother_volume'] = new_root_name

    volume_ids = scene.add_volumes([root] + descendants, select=True)
    logger.info("Imported template as '%s' with %d descendant(s) under '%s'.",
                new_root_name, len(descendants), target_parent_name)

    return {
        'root_id': volume_ids[0],
        'root_name': new_root_name,
        'name_map': name_map,
        'instance_id': instance_id,
        'compound_id': compound_id,
        'volume_ids': volume_ids,
    }
