import asyncio
import json
import os
import pytest

from compound_sync.errors import (
    StorageNotInitializedError, TemplateNotFoundError, TemplateValidationError
)
from compound_sync.template_store import (
    TemplateStore, MemoryBackend, FileSystemBackend, sanitize_name, FORMAT_VERSION
)

def _internal_template():
    return {
        'object': {'name': 'holder', 'type': 'box', 'mother_volume': 'World',
                   'position': {'x': 1, 'y': 2, 'z': 3}, 'rotation': {'x': 0, 'y': 0, 'z': 0},
                   'size': {'x': 10, 'y': 10, 'z': 10}},
        'descendants': [
            {'name': 'tube', 'type': 'cylinder', 'mother_volume': 'holder', 'component_id': 'component_t',
             'position': {'x': 0, 'y': 0, 'z': 0}, 'rotation': {'x': 0, 'y': 0, 'z': 0},
             'radius': 1, 'inner_radius': 0, 'height': 4},
        ],
    }

@pytest.fixture(params=['memory', 'filesystem'])
def store(request, tmp_path):
    if request.param == 'memory':
        backend = MemoryBackend()
    else:
        backend = FileSystemBackend(str(tmp_path / "library"))
    store = TemplateStore(backend)
    asyncio.run(store.initialize())
    return store

def test_sanitize_name():
    assert sanitize_name("My Detector v2.1") == "My_Detector_v2_1"
    assert sanitize_name("ok-name_1") == "ok-name_1"
    with pytest.raises(TemplateValidationError):
        sanitize_name("   ")

def test_save_and_load_standardized(store):
    key = asyncio.run(store.save_template("My Detector", "A test", _internal_template()))
    assert key == "My_Detector"

    data = asyncio.run(store.load_template("My Detector"))
    assert data['object']['placement'] == {'x': 1.0, 'y': 2.0, 'z': 3.0,
                                           'rotation': {'x': 0.0, 'y': 0.0, 'z': 0.0}}
    assert data['object']['dimensions'] == {'x': 10.0, 'y': 10.0, 'z': 10.0}
    assert 'size' not in data['object']
    assert data['descendants'][0]['dimensions'] == {'radius': 1.0, 'inner_radius': 0.0, 'height': 4.0}
    assert data['descendants'][0]['component_id'] == 'component_t'

    metadata = data['metadata']
    assert metadata['name'] == "My Detector"
    assert metadata['description'] == "A test"
    assert metadata['formatVersion'] == FORMAT_VERSION
    assert metadata['createdAt'] and metadata['updatedAt']

def test_overwrite_keeps_created_at(store):
    asyncio.run(store.save_template("det", "first", _internal_template()))
    created = asyncio.run(store.load_template("det"))['metadata']['createdAt']
    asyncio.run(store.save_template("det", "second", _internal_template()))
    metadata = asyncio.run(store.load_template("det"))['metadata']
    assert metadata['createdAt'] == created
    assert metadata['description'] == "second"

def test_list_and_delete(store):
    asyncio.run(store.save_template("alpha", "", _internal_template()))
    asyncio.run(store.save_template("beta", "", _internal_template(), category="shielding"))

    summaries = asyncio.run(store.list_templates())
    assert {s['fileName'] for s in summaries} == {"alpha", "beta"}
    assert {s['category'] for s in summaries} == {"common", "shielding"}
    assert sorted(asyncio.run(store.list_names())) == ["alpha", "beta"]
    assert asyncio.run(store.list_names("shielding")) == ["beta"]

    assert asyncio.run(store.delete_template("alpha"))
    assert asyncio.run(store.list_names()) == ["beta"]
    with pytest.raises(TemplateNotFoundError):
        asyncio.run(store.delete_template("alpha"))

def test_load_missing(store):
    with pytest.raises(TemplateNotFoundError):
        asyncio.run(store.load_template("does_not_exist"))

def test_save_rejects_malformed(store):
    with pytest.raises(TemplateValidationError):
        asyncio.run(store.save_template("bad", "", {'object': {'type': 'box'}}))
    assert asyncio.run(store.list_names()) == []

def test_categories(store):
    assert {"detectors", "shielding", "common"} <= set(asyncio.run(store.list_categories()))
    asyncio.run(store.create_category("calibration sources"))
    assert "calibration_sources" in asyncio.run(store.list_categories())

@pytest.mark.parametrize("backend_factory", [
    lambda tmp_path: MemoryBackend(),
    lambda tmp_path: FileSystemBackend(str(tmp_path)),
])
def test_uninitialized_backend_fails(backend_factory, tmp_path):
    store = TemplateStore(backend_factory(tmp_path))
    with pytest.raises(StorageNotInitializedError):
        asyncio.run(store.save_template("x", "", _internal_template()))
    with pytest.raises(StorageNotInitializedError):
        asyncio.run(store.list_templates())

def test_filesystem_layout(tmp_path):
    store = TemplateStore(FileSystemBackend(str(tmp_path)))
    asyncio.run(store.initialize())
    asyncio.run(store.save_template("ring", "", _internal_template(), category="detectors"))

    path = tmp_path / "objects" / "detectors" / "ring.json"
    assert path.is_file()
    with open(path) as f:
        on_disk = json.load(f)
    assert set(on_disk) == {'object', 'descendants', 'metadata'}
    assert 'placement' in on_disk['object'] and 'dimensions' in on_disk['object']
    assert os.path.isdir(tmp_path / "objects" / "shielding")
