# compound_sync/synchronizer.py
"""
Propagates the shape of a source (a template or a representative instance)
onto matched target instances.

The source provides every shape field; each target keeps its own placement
and identity fields (see ROOT_IDENTITY_FIELDS / COMPONENT_IDENTITY_FIELDS).
"""
import copy
import logging

from .format_standardizer import is_portable, to_internal
from .scene_tree import find_all_descendants, find_dangling_references
from .volume_types import (
    COMPONENT_IDENTITY_FIELDS, ROOT_IDENTITY_FIELDS, get_field, normalize_keys,
)

logger = logging.getLogger(__name__)


def merge_with_identity(source, target, identity_fields):
    """
    Returns a new volume with every field of source, except identity_fields,
    which are taken from target (or left out when target has none).
    """
    merged = copy.deepcopy(normalize_keys(source))
    target = normalize_keys(target)
    for field in identity_fields:
        if field in target:
            merged[field] = copy.deepcopy(target[field])
        else:
            merged.pop(field, None)
    return merged


def build_updated_root(source_root, target_root):
    return merge_with_identity(source_root, target_root, ROOT_IDENTITY_FIELDS)


def build_updated_component(source_component, target_component):
    """
    The component keeps the target's mother_volume, not the target root's name,
    so parts nested deeper than one level stay under their own parent.
    """
    return merge_with_identity(source_component, target_component, COMPONENT_IDENTITY_FIELDS)


def find_matching_component(source_component, candidates):
    """
    Picks the target descendant that corresponds to source_component.

    Equal component_id wins. Without one, a candidate of the same type is used
    (same name preferred), then a candidate with the same name. Candidates that
    carry a different component_id are never matched by type or name.
    Ties go to the first candidate in list order.
    """
    component_id = get_field(source_component, 'component_id')
    if component_id:
        for candidate in candidates:
            if get_field(candidate, 'component_id') == component_id:
                return candidate
        candidates = [c for c in candidates if not get_field(c, 'component_id')]

    source_type = source_component.get('type')
    source_name = source_component.get('name')

    same_type = [c for c in candidates if c.get('type') == source_type]
    for candidate in same_type:
        if candidate.get('name') == source_name:
            return candidate
    if same_type:
        return same_type[0]

    for candidate in candidates:
        if candidate.get('name') == source_name:
            return candidate
    return None


def _as_internal(volume):
    return to_internal(volume) if is_portable(volume) else normalize_keys(volume)


def synchronize(source, targets, scene, apply=None):
    """
    Copies the shape of source onto every target root and its matched descendants.

    Args:
        source: {'object': root, 'descendants': [...]} in either form.
        targets: root volumes of the instances to update (taken from scene).
        scene: the SceneTree the targets live in.
        apply: callable(volume_id, new_volume) performing one atomic replace.
            Defaults to scene.replace_volume.

    Returns:
        dict with 'updated_count' (roots plus matched descendants),
        'matched_descendants' and 'skipped_descendants' (source names).
    """
    apply = apply or scene.replace_volume
    dangling = find_dangling_references(scene.volumes, scene.names())
    if dangling:
        logger.error("Synchronizing in a scene with unresolved parents: %s", dangling)
    source_root = _as_internal(source['object'])
    source_descendants = [_as_internal(d) for d in source.get('descendants') or []]

    updated_count = 0
    matched_total = 0
    skipped = []

    for target_root in targets:
        target_name = target_root.get('name')
        target_id = scene.get_volume_id(target_name)
        if target_id is None:
            logger.warning("Sync target '%s' is no longer in the scene; skipping it.", target_name)
            continue

        # Collected before any replace so the pool reflects the pre-sync tree
        candidates = list(find_all_descendants(target_name, scene.volumes))

        apply(target_id, build_updated_root(source_root, target_root))
        updated_count += 1

        for source_component in source_descendants:
            match = find_matching_component(source_component, candidates)
            if match is None:
                logger.warning(
                    "No counterpart for component '%s' (%s) under instance '%s'; skipping it.",
                    source_component.get('name'), source_component.get('type'), target_name,
                )
                skipped.append(source_component.get('name'))
                continue
            candidates.remove(match)

            component_id = scene.get_volume_id(match.get('name'))
            apply(component_id, build_updated_component(source_component, match))
            updated_count += 1
            matched_total += 1

    logger.info("Synchronized %d volume(s) across %d instance(s).", updated_count, len(targets))
    return {
        'updated_count': updated_count,
        'matched_descendants': matched_total,
        'skipped_descendants': skipped,
    }
