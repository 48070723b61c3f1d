# compound_sync/instance_tracker.py
"""
Registry of which placed instances came from which source (a library template
or a representative instance), and which of them are waiting for an update.

The tracker is advisory: it never touches the scene itself. Registered update
handlers receive the pending work and perform the actual synchronization.
"""
import copy
import hashlib
import json
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def hash_source_data(source_data):
    """SHA-256 of the canonical JSON form, used to detect real changes."""
    canonical = json.dumps(source_data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def _source_type(source_data):
    if not isinstance(source_data, dict):
        return None
    root = source_data.get('object')
    if isinstance(root, dict):
        return root.get('type')
    return source_data.get('type')


def _now():
    return datetime.now().isoformat()


class TrackedInstance:
    def __init__(self, instance_id, volume_ref=None, object_type=None):
        self.instance_id = instance_id
        self.volume_ref = volume_ref
        self.object_type = object_type
        self.needs_update = False
        self.last_updated = None

    def to_dict(self):
        return {
            "instance_id": self.instance_id,
            "volume_ref": self.volume_ref,
            "object_type": self.object_type,
            "needs_update": self.needs_update,
            "last_updated": self.last_updated,
        }


class InstanceTracker:
    def __init__(self):
        self._listeners = []
        self._update_handlers = []
        self.reset()

    def reset(self):
        """Forgets every source, instance and pending update. Subscribers are kept."""
        self._instance_groups = {}   # source_id -> {instance_id: TrackedInstance}
        self._instance_sources = {}  # instance_id -> source_id
        self._source_meta = {}       # source_id -> {data, hash, object_type, last_modified}
        self._type_groups = {}       # object type -> [source_id, ...]
        self._pending_updates = {}   # source_id -> pending update record
        self._notify_listeners()

    # --- Registration ---

    def _remember_source(self, source_id, source_data):
        object_type = _source_type(source_data)
        self._source_meta[source_id] = {
            "data": copy.deepcopy(source_data),
            "hash": hash_source_data(source_data),
            "object_type": object_type,
            "last_modified": _now(),
        }
        if object_type:
            group = self._type_groups.setdefault(object_type, [])
            if source_id not in group:
                group.append(source_id)

    def register_instance(self, source_id, instance_id, volume_ref=None, source_data=None):
        """Associates an instance with a source. Re-registering moves or refreshes it."""
        previous_source = self._instance_sources.get(instance_id)
        if previous_source is not None and previous_source != source_id:
            self._instance_groups.get(previous_source, {}).pop(instance_id, None)
            self._drop_source_if_empty(previous_source)

        if source_data is not None and not self._source_meta.get(source_id, {}).get("data"):
            self._remember_source(source_id, source_data)

        object_type = _source_type(source_data) or self._source_meta.get(source_id, {}).get("object_type")
        group = self._instance_groups.setdefault(source_id, {})
        if instance_id in group:
            group[instance_id].volume_ref = volume_ref if volume_ref is not None else group[instance_id].volume_ref
            group[instance_id].object_type = object_type or group[instance_id].object_type
        else:
            group[instance_id] = TrackedInstance(instance_id, volume_ref, object_type)
        self._instance_sources[instance_id] = source_id

        self._notify_listeners()
        return group[instance_id]

    def _drop_source_if_empty(self, source_id):
        """Forgets a source, its type-group entry and pending record once it has no instances."""
        if self._instance_groups.get(source_id):
            return
        self._instance_groups.pop(source_id, None)
        self._pending_updates.pop(source_id, None)
        meta = self._source_meta.pop(source_id, None)
        object_type = meta["object_type"] if meta else None
        group = self._type_groups.get(object_type)
        if group and source_id in group:
            group.remove(source_id)
            if not group:
                del self._type_groups[object_type]

    def update_instance_ref(self, instance_id, volume_ref):
        source_id = self._instance_sources.get(instance_id)
        if source_id is None:
            return False
        self._instance_groups[source_id][instance_id].volume_ref = volume_ref
        return True

    def remove_instance(self, instance_id):
        """Unregisters an instance. An emptied source loses its pending record."""
        source_id = self._instance_sources.pop(instance_id, None)
        if source_id is None:
            return False
        group = self._instance_groups.get(source_id, {})
        group.pop(instance_id, None)
        if not group:
            self._drop_source_if_empty(source_id)
        elif source_id in self._pending_updates:
            self._refresh_pending(source_id)
        self._notify_listeners()
        return True

    # --- Change detection ---

    def _mark_source_dirty(self, source_id, source_data, **extra):
        instances = self._instance_groups.get(source_id, {})
        for instance in instances.values():
            instance.needs_update = True
        self._pending_updates[source_id] = {
            "source_id": source_id,
            "updated_at": _now(),
            "affected_instance_count": len(instances),
            "source_data": copy.deepcopy(source_data),
            **extra,
        }

    def _mark_similar_sources(self, source_id, source_data):
        object_type = _source_type(source_data)
        if not object_type:
            return
        for other_source_id in self._type_groups.get(object_type, []):
            if other_source_id == source_id or not self._instance_groups.get(other_source_id):
                continue
            logger.info("Source '%s' shares type '%s' with '%s'; marking its instances for update.",
                        other_source_id, object_type, source_id)
            self._mark_source_dirty(other_source_id, source_data,
                                    from_similar_type=True, original_source_id=source_id)

    def update_source(self, source_id, source_data, update_immediately=False):
        """
        Records new data for a source. When the content hash changed, all of its
        instances and the instances of every other source of the same root type
        are marked for update.

        Returns:
            dict: {'affected', 'updated', 'pending'} instance counts.
        """
        if not self._instance_groups.get(source_id):
            logger.warning("No instances registered for source '%s'.", source_id)
            return {"affected": 0, "updated": 0, "pending": 0}

        meta = self._source_meta.get(source_id)
        if meta is not None and meta["hash"] == hash_source_data(source_data):
            logger.debug("Source '%s' is unchanged; nothing to update.", source_id)
            return {"affected": 0, "updated": 0, "pending": 0}

        self._remember_source(source_id, source_data)
        self._mark_source_dirty(source_id, source_data)
        self._mark_similar_sources(source_id, source_data)
        self._notify_listeners()

        affected = len(self._instance_groups[source_id])
        updated = self.apply_updates(source_id) if update_immediately else 0
        return {"affected": affected, "updated": updated, "pending": affected - updated}

    # --- Applying ---

    def _refresh_pending(self, source_id):
        instances = self._instance_groups.get(source_id, {})
        if not any(i.needs_update for i in instances.values()):
            self._pending_updates.pop(source_id, None)
        else:
            self._pending_updates[source_id]["affected_instance_count"] = len(instances)

    def apply_updates(self, source_id=None):
        """
        Hands pending work to the update handlers for one source (or all) and
        clears the dirty flags. Returns the number of instances handed over.
        """
        source_ids = [source_id] if source_id is not None else list(self._pending_updates)
        total_updated = 0

        for sid in source_ids:
            pending = self._pending_updates.get(sid)
            instances = self._instance_groups.get(sid)
            if pending is None or not instances:
                continue

            update_info = {"source_id": sid, "source_data": pending["source_data"], "instances": []}
            for instance in instances.values():
                if instance.needs_update:
                    update_info["instances"].append({
                        "instance_id": instance.instance_id,
                        "volume_ref": instance.volume_ref,
                    })
                    instance.needs_update = False
                    instance.last_updated = _now()
                    total_updated += 1

            if update_info["instances"]:
                for handler in list(self._update_handlers):
                    try:
                        handler(update_info)
                    except Exception:
                        logger.exception("Update handler failed for source '%s'", sid)

            self._refresh_pending(sid)

        self._notify_listeners()
        return total_updated

    # --- Queries ---

    def get_related_instances(self, source_id, exclude_instance_id=None):
        return [
            instance.to_dict()
            for instance in self._instance_groups.get(source_id, {}).values()
            if instance.instance_id != exclude_instance_id
        ]

    def get_source_id_for_instance(self, instance_id):
        return self._instance_sources.get(instance_id)

    def get_all_sources(self):
        return list(self._instance_groups)

    def get_source_data(self, source_id):
        meta = self._source_meta.get(source_id)
        return copy.deepcopy(meta["data"]) if meta else None

    def get_pending_updates(self):
        return copy.deepcopy(self._pending_updates)

    def get_pending_update_count(self):
        return len(self._pending_updates)

    def get_pending_instance_count(self):
        return sum(
            1
            for group in self._instance_groups.values()
            for instance in group.values()
            if instance.needs_update
        )

    # --- Subscribers ---

    def add_update_listener(self, listener):
        """listener(status) gets {'pending_source_count', 'pending_instance_count'}. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def register_update_handler(self, handler):
        """handler(update_info) performs the propagation. Returns an unregister callable."""
        if not callable(handler):
            raise TypeError("Update handler must be callable")
        self._update_handlers.append(handler)

        def unregister():
            if handler in self._update_handlers:
                self._update_handlers.remove(handler)
        return unregister

    def _notify_listeners(self):
        status = {
            "pending_source_count": self.get_pending_update_count(),
            "pending_instance_count": self.get_pending_instance_count(),
        }
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Update listener raised; continuing with the others")
