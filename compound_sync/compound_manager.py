# compound_sync/compound_manager.py
import json
import logging

from .errors import CompoundError, StorageError, TemplateNotFoundError
from .identity import generate_component_id, generate_unique_name
from .import_engine import import_template
from .instance_tracker import InstanceTracker
from .scene_tree import SceneTree, extract_object_with_descendants
from .structural_matcher import find_instances
from .synchronizer import synchronize
from .template_store import DEFAULT_CATEGORY, MemoryBackend, TemplateStore, sanitize_name
from .volume_types import WORLD_ID, get_field

logger = logging.getLogger(__name__)


def error_status(error):
    """HTTP status for an error returned by the manager."""
    if isinstance(error, StorageError) and not isinstance(error, TemplateNotFoundError):
        return 500
    return 400


class CompoundManager:
    """
    One editing session: the live scene, the template library, and the
    instance tracker. Methods return (result, error_msg) tuples; the
    exception behind the last error is kept in self.last_error.
    """

    def __init__(self, expression_evaluator, template_store=None):
        self.expression_evaluator = expression_evaluator
        self.scene = SceneTree()
        self.template_store = template_store or TemplateStore(MemoryBackend(), expression_evaluator)
        self.tracker = InstanceTracker()
        self.tracker.register_update_handler(self._handle_tracker_update)
        self.last_error = None

    def _fail(self, error):
        self.last_error = error
        return None, str(error)

    # --- Scene ---

    def create_empty_scene(self):
        self.scene = SceneTree()
        self.tracker.reset()
        self.last_error = None

    def get_scene_description(self):
        return self.scene.to_dict()

    def save_scene_to_json_string(self):
        return json.dumps(self.scene.to_dict(), indent=2)

    def load_scene_from_json_string(self, json_string):
        data = json.loads(json_string)
        self.scene = SceneTree.from_dict(data)
        self.tracker.reset()
        self.scene.find_dangling_references()
        return self.scene

    def add_volume(self, volume_data, parent_name=None):
        """Adds a single volume. A missing name is generated from the type."""
        volume = dict(volume_data or {})
        if not volume.get('type'):
            return self._fail(CompoundError("Volume type is required."))
        if not volume.get('name'):
            volume['name'] = generate_unique_name(volume['type'], self.scene.names())
        volume['mother_volume'] = parent_name or get_field(volume, 'mother_volume') or self.scene.world_name
        volume.pop('parent', None)
        volume.setdefault('position', {'x': 0, 'y': 0, 'z': 0})
        volume.setdefault('rotation', {'x': 0, 'y': 0, 'z': 0})

        try:
            volume_id = self.scene.add_volume(volume)
        except CompoundError as e:
            return self._fail(e)
        return volume_id, None

    def update_volume(self, volume_id, patch, keep_selected=True, is_live_update=False):
        try:
            volume = self.scene.update_volume(volume_id, patch, keep_selected, is_live_update)
        except CompoundError as e:
            return self._fail(e)
        if volume.get('instance_id') and 'name' in (patch or {}):
            self.tracker.update_instance_ref(volume['instance_id'], volume['name'])
        return volume, None

    def rename_volume(self, volume_id, new_name):
        try:
            volume = self.scene.rename_volume(volume_id, new_name)
        except CompoundError as e:
            return self._fail(e)
        if volume.get('instance_id'):
            self.tracker.update_instance_ref(volume['instance_id'], volume['name'])
        return volume, None

    def remove_volume(self, volume_id):
        """Removes a volume and its subtree; removed instances leave the tracker."""
        try:
            removed = self.scene.remove_volume(volume_id)
        except CompoundError as e:
            return self._fail(e)
        for volume in removed:
            if volume.get('instance_id'):
                self.tracker.remove_instance(volume['instance_id'])
        return [v.get('name') for v in removed], None

    # --- Templates ---

    def extract_template(self, volume_id):
        """
        Builds a template from a live volume and its subtree.
        Live descendants without a component_id get one first, and the root
        gets a compound_id, so the saved template and the scene share identities.
        """
        root = self.scene.get_volume_by_id(volume_id)
        if root is None:
            return self._fail(CompoundError(f"Volume '{volume_id}' not found."))
        if volume_id == WORLD_ID:
            return self._fail(CompoundError("The World volume cannot be saved as a template."))

        if not get_field(root, 'compound_id'):
            root['compound_id'] = root['name']
        if root.get('type') == 'assembly' and not get_field(root, 'assembly_id'):
            root['assembly_id'] = root['name']
        for descendant in self.scene.get_descendants(root['name']):
            if not get_field(descendant, 'component_id'):
                descendant['component_id'] = generate_component_id()

        template = extract_object_with_descendants(root, self.scene.volumes)
        template['object'].pop('instance_id', None)
        return template, None

    async def save_template(self, volume_id, name, description="", category=DEFAULT_CATEGORY):
        template, error_msg = self.extract_template(volume_id)
        if template is None:
            return None, error_msg
        try:
            key = await self.template_store.save_template(name, description, template, category)
        except CompoundError as e:
            return self._fail(e)
        return key, None

    async def load_template(self, name, category=None):
        try:
            return await self.template_store.load_template(name, category), None
        except CompoundError as e:
            return self._fail(e)

    async def list_templates(self, category=None):
        try:
            return await self.template_store.list_templates(category), None
        except CompoundError as e:
            return self._fail(e)

    async def delete_template(self, name, category=None):
        try:
            return await self.template_store.delete_template(name, category), None
        except CompoundError as e:
            return self._fail(e)

    async def import_template(self, name, target_parent_name=None, category=None):
        """Loads a library template and places a new instance of it in the scene."""
        template, error_msg = await self.load_template(name, category)
        if template is None:
            return None, error_msg

        metadata_name = (template.get('metadata') or {}).get('name') or name
        try:
            result = import_template(
                template,
                target_parent_name or self.scene.world_name,
                self.scene,
                metadata_name=metadata_name,
                evaluator=self.expression_evaluator,
            )
        except CompoundError as e:
            return self._fail(e)

        self.tracker.register_instance(
            sanitize_name(name), result['instance_id'],
            volume_ref=result['root_name'], source_data=template,
        )
        return result, None

    def _describe_matches(self, matches):
        return [
            {
                'id': self.scene.get_volume_id(v['name']),
                'name': v['name'],
                'display_name': v.get('display_name'),
            }
            for v in matches
        ]

    async def find_template_instances(self, name, category=None):
        template, error_msg = await self.load_template(name, category)
        if template is None:
            return None, error_msg
        matches = find_instances(template, self.scene.all_volumes())
        return self._describe_matches(matches), None

    def _select_targets(self, matches, target_ids):
        if target_ids is None:
            return matches
        wanted = set(target_ids)
        return [v for v in matches if self.scene.get_volume_id(v['name']) in wanted]

    async def update_instances_from_template(self, name, target_ids=None, category=None):
        """
        Pushes a library template onto the structural instances in the scene.
        With target_ids, only those matching instances are updated.
        """
        template, error_msg = await self.load_template(name, category)
        if template is None:
            return None, error_msg

        matches = find_instances(template, self.scene.all_volumes())
        targets = self._select_targets(matches, target_ids)
        try:
            result = synchronize(template, targets, self.scene)
        except CompoundError as e:
            return self._fail(e)
        result['instance_count'] = len(targets)
        return result, None

    def sync_from_instance(self, volume_id, target_ids=None):
        """Uses a live instance as the source for every other structural instance."""
        source_root = self.scene.get_volume_by_id(volume_id)
        if source_root is None or volume_id == WORLD_ID:
            return self._fail(CompoundError(f"Volume '{volume_id}' is not a valid sync source."))

        source = extract_object_with_descendants(source_root, self.scene.volumes)
        matches = find_instances(source, self.scene.all_volumes(), exclude_names={source_root['name']})
        targets = self._select_targets(matches, target_ids)
        try:
            result = synchronize(source, targets, self.scene)
        except CompoundError as e:
            return self._fail(e)
        result['instance_count'] = len(targets)
        return result, None

    # --- Tracker ---

    def notify_source_changed(self, source_id, source_data=None, volume_id=None, update_immediately=False):
        """
        Tells the tracker a source has new content. The data can be given
        directly or taken from a live volume via volume_id.
        """
        if source_data is None and volume_id is not None:
            root = self.scene.get_volume_by_id(volume_id)
            if root is None:
                return self._fail(CompoundError(f"Volume '{volume_id}' not found."))
            source_data = extract_object_with_descendants(root, self.scene.volumes)
        if source_data is None:
            return self._fail(CompoundError("No source data given."))
        return self.tracker.update_source(source_id, source_data, update_immediately), None

    async def refresh_template_source(self, name, category=None, update_immediately=False):
        """Re-reads a library template and hands its content to the tracker."""
        template, error_msg = await self.load_template(name, category)
        if template is None:
            return None, error_msg
        return self.notify_source_changed(sanitize_name(name), template, update_immediately=update_immediately)

    def apply_pending_updates(self, source_id=None):
        return self.tracker.apply_updates(source_id), None

    def get_pending_updates(self):
        return {
            'pending_source_count': self.tracker.get_pending_update_count(),
            'pending_instance_count': self.tracker.get_pending_instance_count(),
            'updates': self.tracker.get_pending_updates(),
        }

    def _handle_tracker_update(self, update_info):
        """Tracker handler: synchronizes the flagged instances that still match structurally."""
        source_data = update_info['source_data']
        refs = {i['volume_ref'] for i in update_info['instances'] if i.get('volume_ref')}
        matches = find_instances(source_data, self.scene.all_volumes())
        targets = [v for v in matches if v['name'] in refs]

        skipped = refs - {v['name'] for v in targets}
        if skipped:
            logger.warning("Instances %s of source '%s' no longer match it structurally; not updated.",
                           sorted(skipped), update_info['source_id'])
        if targets:
            synchronize(source_data, targets, self.scene)
