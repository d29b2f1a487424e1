"""
Error taxonomy for shared token resolution.

Configuration errors are fatal at initialization. Everything else is fatal
for the current request only and is turned into an empty result at the
request boundary (see resolver.SharedTokenResolver.resolve).
"""


class SharedTokenError(Exception):
    """Base class for all shared token failures."""
    pass


class ConfigurationError(SharedTokenError):
    """Missing or invalid required settings."""
    pass


class MissingSourceValue(SharedTokenError):
    """A configured source attribute resolved to no values."""

    def __init__(self, attribute_name: str):
        super().__init__(f"Source attribute {attribute_name} provided no values")
        self.attribute_name = attribute_name


class StorageError(SharedTokenError):
    """Base class for persistence failures."""
    pass


class StorageUnavailable(StorageError):
    """Connection, query or modify failure against a backend."""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


class NoTargetEntry(StorageError):
    """Directory search matched no entry to store the token in."""
    pass
