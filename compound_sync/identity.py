# compound_sync/identity.py

import time
import uuid

RANDOM_SUFFIX_LENGTH = 8


def _timestamp_ms():
    return int(time.time() * 1000)


def _random_suffix():
    return uuid.uuid4().hex[:RANDOM_SUFFIX_LENGTH]


def generate_unique_name(type_name="volume", existing_names=None):
    """
    Returns a name of the form '<type>_<unixMillis>_<random>'.
    If existing_names is given, keeps drawing until the name is not in it.
    """
    prefix = type_name or "volume"
    while True:
        name = f"{prefix}_{_timestamp_ms()}_{_random_suffix()}"
        if not existing_names or name not in existing_names:
            return name


def generate_component_id():
    return f"component_{_timestamp_ms()}_{_random_suffix()}"


def generate_instance_id():
    return f"instance_{_timestamp_ms()}_{_random_suffix()}"
