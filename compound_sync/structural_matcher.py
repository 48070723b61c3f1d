# compound_sync/structural_matcher.py
"""
Finds the volumes in a scene whose subtree has the same structure as a template.

A candidate matches when its root type equals the template root type, its
descendant count and per-type histogram equal the template's, and (for
templates that carry component ids) every template component id is present
in the candidate's subtree. Missing a match is preferred to a false one.
"""
import logging
from collections import Counter

from .scene_tree import (
    build_type_histogram, collect_component_ids, find_all_descendants, find_dangling_references,
)
from .volume_types import get_field, normalize_keys

logger = logging.getLogger(__name__)


class TemplateSignature:
    """The structural fingerprint a candidate subtree is compared against."""

    def __init__(self, root_type, descendant_count, histogram, component_ids):
        self.root_type = root_type
        self.descendant_count = descendant_count
        self.histogram = Counter(histogram)
        self.component_ids = component_ids

    @classmethod
    def from_template(cls, template):
        root = normalize_keys(template.get('object') or {})
        descendants = [normalize_keys(d) for d in template.get('descendants') or []]
        return cls(
            root_type=root.get('type'),
            descendant_count=len(descendants),
            histogram=build_type_histogram(descendants),
            component_ids=collect_component_ids(descendants),
        )

    def matches(self, descendants):
        if len(descendants) != self.descendant_count:
            return False
        # Unary + drops zero counts so an absent key equals a count of 0
        if +build_type_histogram(descendants) != +self.histogram:
            return False
        if self.component_ids and not self.component_ids <= collect_component_ids(descendants):
            return False
        return True


def find_instances(template, scene_volumes, exclude_names=None):
    """
    Returns the volumes in scene_volumes that are structural instances of template.

    Args:
        template: {'object', 'descendants'} in portable or in-memory form.
        scene_volumes: every volume of the live scene, World included. A volume
            without a mother_volume is the tree root and never a candidate.
        exclude_names: root names never reported, e.g. the source of a sync.
    """
    signature = TemplateSignature.from_template(template)
    if not signature.root_type:
        logger.warning("Template root has no type; nothing can match it.")
        return []

    dangling = find_dangling_references(scene_volumes, {v.get('name') for v in scene_volumes})
    if dangling:
        logger.error("Matching over a scene with unresolved parents: %s", dangling)

    exclude_names = set(exclude_names or ())
    matches = []
    for volume in scene_volumes:
        if volume.get('type') != signature.root_type or volume.get('name') in exclude_names:
            continue
        if get_field(volume, 'mother_volume') is None:
            continue
        descendants = find_all_descendants(volume.get('name'), scene_volumes)
        if signature.matches(descendants):
            matches.append(volume)

    if not matches:
        logger.warning("No instances of template with root type '%s' found in scene.", signature.root_type)
    return matches
