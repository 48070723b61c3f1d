# compound_sync/errors.py

class CompoundError(Exception):
    """Base class for every error raised by the compound engine."""


class TemplateValidationError(CompoundError, ValueError):
    """A template or volume did not have the shape this system writes."""


class VolumeNotFoundError(CompoundError, KeyError):
    """A volume id or name does not resolve in the scene."""

    def __str__(self):
        # KeyError repr-quotes its message; keep it readable for API responses
        return str(self.args[0]) if self.args else "Volume not found"


class DuplicateNameError(CompoundError):
    """Two volumes would share a name. Always a defect, never auto-renamed."""


class StorageError(CompoundError):
    """Base class for template store failures."""


class StorageNotInitializedError(StorageError):
    pass


class StoragePermissionError(StorageError):
    pass


class TemplateNotFoundError(StorageError):
    pass
