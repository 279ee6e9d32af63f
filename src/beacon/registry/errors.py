"""Errors raised by the service registry."""


class RegistryError(Exception):
    """Base class for registry errors."""


class AlreadyRegistered(RegistryError):
    """A registration for this path is already held."""

    def __init__(self, path: str):
        super().__init__(f"path already registered: {path}")
        self.path = path


class AlreadyWatched(RegistryError):
    """A watch for this prefix is already held."""

    def __init__(self, prefix: str):
        super().__init__(f"prefix already watched: {prefix}")
        self.prefix = prefix


class NotFound(RegistryError):
    """No registration or watch exists for the given key."""

    def __init__(self, key: str):
        super().__init__(f"not found: {key}")
        self.key = key


class Closed(RegistryError):
    """The registry has been shut down."""

    def __init__(self):
        super().__init__("registry is closed")


class StoreUnavailable(RegistryError):
    """Transient failure talking to the key-value store."""


class ProtocolViolation(RegistryError):
    """The store returned something it should not have."""
