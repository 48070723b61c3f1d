# compound_sync/template_store.py
"""
Persistence for named templates ("compound objects").

TemplateStore is the engine-facing API. It standardizes templates before they
are written and stamps their metadata. The actual storage is delegated to a
TemplateBackend; callers never see categories unless they ask for them.
All operations are coroutines so a backend is free to block on disk or network.
"""
import asyncio
import copy
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime

from .errors import (
    StorageError, StorageNotInitializedError, StoragePermissionError,
    TemplateNotFoundError, TemplateValidationError,
)
from .format_standardizer import standardize_template, validate_template_shape

logger = logging.getLogger(__name__)

FORMAT_VERSION = "2.0"
DEFAULT_CATEGORY = "common"
DEFAULT_CATEGORIES = ("detectors", "shielding", "common")

_UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9_-]')


def sanitize_name(name):
    """Replaces anything outside [A-Za-z0-9_-] with '_'."""
    if not name or not str(name).strip():
        raise TemplateValidationError("Template name cannot be empty.")
    return _UNSAFE_NAME_CHARS.sub('_', str(name).strip())


class TemplateBackend(ABC):
    """Storage contract. Keys passed in are already sanitized."""

    @abstractmethod
    async def initialize(self):
        ...

    @abstractmethod
    async def save(self, name, data, category=DEFAULT_CATEGORY):
        ...

    @abstractmethod
    async def load(self, name, category=None):
        """Returns the stored dict or None."""

    @abstractmethod
    async def list(self, category=None):
        """Returns a list of (category, name) pairs."""

    @abstractmethod
    async def delete(self, name, category=None):
        """Returns True if something was deleted."""

    @abstractmethod
    async def list_categories(self):
        ...

    @abstractmethod
    async def create_category(self, name):
        ...


class MemoryBackend(TemplateBackend):
    """In-process store. Data is deep-copied on the way in and out."""

    def __init__(self):
        self._categories = None

    def _require_initialized(self):
        if self._categories is None:
            raise StorageNotInitializedError("Template storage has not been initialized.")

    async def initialize(self):
        if self._categories is None:
            self._categories = {category: {} for category in DEFAULT_CATEGORIES}
        return True

    async def save(self, name, data, category=DEFAULT_CATEGORY):
        self._require_initialized()
        self._categories.setdefault(category, {})[name] = copy.deepcopy(data)
        return True

    async def load(self, name, category=None):
        self._require_initialized()
        categories = [category] if category else list(self._categories)
        for cat in categories:
            if name in self._categories.get(cat, {}):
                return copy.deepcopy(self._categories[cat][name])
        return None

    async def list(self, category=None):
        self._require_initialized()
        categories = [category] if category else list(self._categories)
        return [(cat, name) for cat in categories for name in sorted(self._categories.get(cat, {}))]

    async def delete(self, name, category=None):
        self._require_initialized()
        categories = [category] if category else list(self._categories)
        for cat in categories:
            if self._categories.get(cat, {}).pop(name, None) is not None:
                return True
        return False

    async def list_categories(self):
        self._require_initialized()
        return list(self._categories)

    async def create_category(self, name):
        self._require_initialized()
        self._categories.setdefault(sanitize_name(name), {})
        return True


class FileSystemBackend(TemplateBackend):
    """JSON files under <base_dir>/objects/<category>/<name>.json."""

    def __init__(self, base_dir):
        self.base_dir = base_dir
        self.objects_dir = os.path.join(base_dir, "objects")
        self._initialized = False

    def _require_initialized(self):
        if not self._initialized:
            raise StorageNotInitializedError("Template storage has not been initialized.")

    def _path(self, category, name):
        return os.path.join(self.objects_dir, category, f"{name}.json")

    # --- Blocking helpers, run through asyncio.to_thread ---

    def _make_dirs(self):
        for category in DEFAULT_CATEGORIES:
            os.makedirs(os.path.join(self.objects_dir, category), exist_ok=True)

    def _categories_on_disk(self):
        if not os.path.isdir(self.objects_dir):
            return []
        return sorted(
            entry for entry in os.listdir(self.objects_dir)
            if os.path.isdir(os.path.join(self.objects_dir, entry))
        )

    def _write_json(self, path, data):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)

    def _read_json(self, path):
        with open(path, 'r') as f:
            return json.load(f)

    def _list_files(self, categories):
        found = []
        for category in categories:
            directory = os.path.join(self.objects_dir, category)
            if not os.path.isdir(directory):
                continue
            for filename in sorted(os.listdir(directory)):
                if filename.endswith('.json'):
                    found.append((category, filename[:-len('.json')]))
        return found

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except PermissionError as e:
            raise StoragePermissionError(f"Permission denied accessing template storage: {e}") from e
        except OSError as e:
            raise StorageError(f"Template storage error: {e}") from e

    # --- Backend API ---

    async def initialize(self):
        await self._run(self._make_dirs)
        self._initialized = True
        logger.info("Template library initialized at %s", self.objects_dir)
        return True

    async def save(self, name, data, category=DEFAULT_CATEGORY):
        self._require_initialized()
        await self._run(self._write_json, self._path(category, name), data)
        return True

    async def _find(self, name, category):
        categories = [category] if category else await self._run(self._categories_on_disk)
        for cat in categories:
            path = self._path(cat, name)
            if await asyncio.to_thread(os.path.isfile, path):
                return path
        return None

    async def load(self, name, category=None):
        self._require_initialized()
        path = await self._find(name, category)
        if path is None:
            return None
        try:
            return await self._run(self._read_json, path)
        except json.JSONDecodeError as e:
            raise StorageError(f"Template file '{path}' is not valid JSON: {e}") from e

    async def list(self, category=None):
        self._require_initialized()
        categories = [category] if category else await self._run(self._categories_on_disk)
        return await self._run(self._list_files, categories)

    async def delete(self, name, category=None):
        self._require_initialized()
        path = await self._find(name, category)
        if path is None:
            return False
        await self._run(os.remove, path)
        return True

    async def list_categories(self):
        self._require_initialized()
        return await self._run(self._categories_on_disk)

    async def create_category(self, name):
        self._require_initialized()
        await self._run(os.makedirs, os.path.join(self.objects_dir, sanitize_name(name)), 0o777, True)
        return True


class TemplateStore:
    def __init__(self, backend, evaluator=None):
        self.backend = backend
        self.evaluator = evaluator

    async def initialize(self):
        return await self.backend.initialize()

    async def save_template(self, name, description, template, category=DEFAULT_CATEGORY):
        """
        Standardizes and stores a template under a sanitized name.
        Overwriting keeps the original createdAt. Returns the stored key.
        """
        key = sanitize_name(name)
        validate_template_shape(template)

        existing = await self.backend.load(key, category)
        now = datetime.now().isoformat()
        created_at = (existing or {}).get('metadata', {}).get('createdAt', now)

        data = standardize_template(
            {'object': template['object'], 'descendants': template['descendants']},
            self.evaluator,
        )
        data['metadata'] = {
            'name': name,
            'description': description or "",
            'createdAt': created_at,
            'updatedAt': now,
            'formatVersion': FORMAT_VERSION,
        }

        await self.backend.save(key, data, category)
        logger.info("Saved template '%s' (%d descendant(s)) to category '%s'.",
                    key, len(data['descendants']), category)
        return key

    async def load_template(self, name, category=None):
        key = sanitize_name(name)
        data = await self.backend.load(key, category)
        if data is None:
            raise TemplateNotFoundError(f"Template '{name}' not found.")
        return data

    async def list_templates(self, category=None):
        """Metadata summaries {name, description, updatedAt, fileName, category}."""
        summaries = []
        for cat, key in await self.backend.list(category):
            data = await self.backend.load(key, cat) or {}
            metadata = data.get('metadata', {})
            summaries.append({
                'name': metadata.get('name', key),
                'description': metadata.get('description', ""),
                'updatedAt': metadata.get('updatedAt'),
                'fileName': key,
                'category': cat,
            })
        return summaries

    async def list_names(self, category=None):
        return [key for _, key in await self.backend.list(category)]

    async def delete_template(self, name, category=None):
        key = sanitize_name(name)
        deleted = await self.backend.delete(key, category)
        if not deleted:
            raise TemplateNotFoundError(f"Template '{name}' not found.")
        return True

    async def list_categories(self):
        return await self.backend.list_categories()

    async def create_category(self, name):
        return await self.backend.create_category(name)
