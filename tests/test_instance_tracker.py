import pytest
from unittest.mock import MagicMock

from compound_sync.instance_tracker import InstanceTracker, hash_source_data

def _template(root_type='box', size=1):
    return {'object': {'type': root_type, 'size': {'x': size, 'y': size, 'z': size}}, 'descendants': []}

@pytest.fixture
def tracker():
    return InstanceTracker()

def test_register_and_lookup(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.register_instance('detector', 'inst_2', 'box_b')

    assert tracker.get_source_id_for_instance('inst_2') == 'detector'
    assert tracker.get_all_sources() == ['detector']
    related = tracker.get_related_instances('detector', exclude_instance_id='inst_1')
    assert [r['instance_id'] for r in related] == ['inst_2']
    assert related[0]['volume_ref'] == 'box_b'
    assert related[0]['object_type'] == 'box'
    assert tracker.get_pending_update_count() == 0

def test_register_moves_instance_between_sources(tracker):
    tracker.register_instance('a', 'inst_1', 'v1')
    tracker.register_instance('b', 'inst_1', 'v1')
    assert tracker.get_source_id_for_instance('inst_1') == 'b'
    assert tracker.get_related_instances('a') == []

def test_update_source_marks_instances(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template(size=1))
    tracker.register_instance('detector', 'inst_2', 'box_b')

    result = tracker.update_source('detector', _template(size=2))
    assert result == {'affected': 2, 'updated': 0, 'pending': 2}
    assert tracker.get_pending_instance_count() == 2

    pending = tracker.get_pending_updates()['detector']
    assert pending['affected_instance_count'] == 2
    assert pending['source_data'] == _template(size=2)
    assert tracker.get_source_data('detector') == _template(size=2)

def test_unchanged_data_is_a_no_op(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    assert tracker.update_source('detector', _template())['affected'] == 0
    assert tracker.get_pending_update_count() == 0

def test_update_without_instances_is_ignored(tracker):
    assert tracker.update_source('nobody', _template()) == {'affected': 0, 'updated': 0, 'pending': 0}

def test_same_type_sources_are_marked_too(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template('box'))
    tracker.register_instance('shield', 'inst_2', 'box_b', _template('box', size=3))
    tracker.register_instance('ball', 'inst_3', 'sphere_a', _template('sphere'))

    tracker.update_source('detector', _template('box', size=9))

    pending = tracker.get_pending_updates()
    assert set(pending) == {'detector', 'shield'}
    assert pending['shield']['from_similar_type'] is True
    assert pending['shield']['original_source_id'] == 'detector'
    assert tracker.get_pending_instance_count() == 2

def test_apply_updates_calls_handlers_and_clears(tracker):
    handler = MagicMock()
    tracker.register_update_handler(handler)
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.update_source('detector', _template(size=5))

    assert tracker.apply_updates('detector') == 1
    handler.assert_called_once()
    info = handler.call_args[0][0]
    assert info['source_id'] == 'detector'
    assert info['instances'] == [{'instance_id': 'inst_1', 'volume_ref': 'box_a'}]
    assert tracker.get_pending_update_count() == 0
    assert tracker.get_pending_instance_count() == 0

    # Nothing left to do
    assert tracker.apply_updates() == 0
    handler.assert_called_once()

def test_update_immediately(tracker):
    handler = MagicMock()
    tracker.register_update_handler(handler)
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    result = tracker.update_source('detector', _template(size=4), update_immediately=True)
    assert result == {'affected': 1, 'updated': 1, 'pending': 0}
    handler.assert_called_once()

def test_failing_handler_does_not_block_others(tracker):
    calls = []
    tracker.register_update_handler(MagicMock(side_effect=RuntimeError("boom")))
    tracker.register_update_handler(lambda info: calls.append(info['source_id']))
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.update_source('detector', _template(size=2))

    assert tracker.apply_updates() == 1
    assert calls == ['detector']
    assert tracker.get_pending_update_count() == 0

def test_listeners_receive_counts_and_are_isolated(tracker):
    received = []
    tracker.add_update_listener(MagicMock(side_effect=ValueError("listener bug")))
    unsubscribe = tracker.add_update_listener(received.append)

    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.update_source('detector', _template(size=2))
    assert received[-1] == {'pending_source_count': 1, 'pending_instance_count': 1}

    unsubscribe()
    tracker.apply_updates()
    assert received[-1] == {'pending_source_count': 1, 'pending_instance_count': 1}
    assert tracker.get_pending_update_count() == 0

def test_remove_instance_drops_empty_pending(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.update_source('detector', _template(size=2))
    assert tracker.remove_instance('inst_1')
    assert tracker.get_pending_update_count() == 0
    assert not tracker.remove_instance('inst_1')

def test_update_instance_ref(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a')
    assert tracker.update_instance_ref('inst_1', 'box_renamed')
    assert tracker.get_related_instances('detector')[0]['volume_ref'] == 'box_renamed'
    assert not tracker.update_instance_ref('missing', 'x')

def test_unregister_handler(tracker):
    handler = MagicMock()
    unregister = tracker.register_update_handler(handler)
    unregister()
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.update_source('detector', _template(size=2), update_immediately=True)
    handler.assert_not_called()

def test_reset_keeps_subscribers(tracker):
    received = []
    tracker.add_update_listener(received.append)
    tracker.register_instance('detector', 'inst_1', 'box_a', _template())
    tracker.reset()
    assert tracker.get_all_sources() == []
    assert received[-1] == {'pending_source_count': 0, 'pending_instance_count': 0}

def test_hash_ignores_key_order():
    assert hash_source_data({'a': 1, 'b': 2}) == hash_source_data({'b': 2, 'a': 1})
    assert hash_source_data({'a': 1}) != hash_source_data({'a': 2})

def test_emptied_source_is_forgotten(tracker):
    tracker.register_instance('detector', 'inst_1', 'box_a', _template('box'))
    tracker.register_instance('shield', 'inst_2', 'box_b', _template('box', size=3))
    tracker.update_source('detector', _template('box', size=2))

    assert tracker.remove_instance('inst_1')
    assert tracker.get_all_sources() == ['shield']
    assert tracker.get_source_data('detector') is None
    assert tracker._type_groups == {'box': ['shield']}
    assert 'detector' not in tracker.get_pending_updates()

    tracker.remove_instance('inst_2')
    assert tracker.get_all_sources() == []
    assert tracker._type_groups == {}
    assert tracker.get_pending_update_count() == 0

def test_moving_last_instance_forgets_old_source(tracker):
    tracker.register_instance('a', 'inst_1', 'v1', _template('sphere'))
    tracker.register_instance('b', 'inst_1', 'v1')
    assert tracker.get_all_sources() == ['b']
    assert 'sphere' not in tracker._type_groups
