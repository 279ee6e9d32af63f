#!/usr/bin/env python3
"""
Service Registry coordinator

This module provides:
- ServiceRegistry: owns every NodeRegistration (by path) and DirectoryWatch
  (by prefix) created through it, and shuts them all down together
- ServiceRegistry.from_config: builds a registry connected to etcd
"""

import threading
from typing import Dict, List, Optional

from ..config import BeaconConfig, resolve_password, validate_config
from .directory import DirectoryWatch, WatchHandler
from .errors import AlreadyRegistered, AlreadyWatched, Closed, NotFound
from .node import NodeRegistration
from .store import KVStore


class ServiceRegistry:
    """Thread-safe registry of live registrations and prefix watches.

    The lock only guards the two maps and the closed flag. Store I/O and
    waiting for a child to finish always happen after it is released.
    """

    def __init__(
        self,
        store: KVStore,
        ttl: int = 10,
        retry_interval: float = 1.0,
        max_retry_interval: float = 30.0,
        resync_interval: float = 5.0,
        watch_retry_interval: float = 1.0,
    ):
        self.store = store
        self.ttl = ttl
        self.retry_interval = retry_interval
        self.max_retry_interval = max_retry_interval
        self.resync_interval = resync_interval
        self.watch_retry_interval = watch_retry_interval

        self._lock = threading.Lock()
        self._registrations: Dict[str, NodeRegistration] = {}
        self._watches: Dict[str, DirectoryWatch] = {}
        self._closed = False
        self._close_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: BeaconConfig) -> "ServiceRegistry":
        """Connect to the etcd cluster described by *config*."""
        from .etcd_store import EtcdStore

        validate_config(config)
        store = EtcdStore.connect(
            config.endpoints,
            username=config.username,
            password=resolve_password(config),
            timeout=config.dial_timeout,
        )
        return cls(
            store,
            ttl=config.ttl,
            retry_interval=config.retry_interval,
            max_retry_interval=config.max_retry_interval,
            resync_interval=config.resync_interval,
            watch_retry_interval=config.watch_retry_interval,
        )

    def __enter__(self) -> "ServiceRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def register(self, path: str, value: str) -> None:
        """Keep ``path = value`` registered until unregister() or close().

        Returns immediately; the key appears once the first attempt succeeds.
        """
        with self._lock:
            if self._closed:
                raise Closed()
            if path in self._registrations:
                raise AlreadyRegistered(path)
            registration = NodeRegistration(
                self.store, path, value, self.ttl,
                retry_interval=self.retry_interval,
                max_retry_interval=self.max_retry_interval,
            )
            self._registrations[path] = registration
            registration.start()

    def unregister(self, path: str) -> None:
        """Stop a registration and wait until its key has been cleaned up."""
        with self._lock:
            if self._closed:
                raise Closed()
            registration = self._registrations.pop(path, None)
            if registration is None:
                raise NotFound(path)
        registration.close()

    def add_watch(self, prefix: str, handler: WatchHandler) -> None:
        """Call *handler* with a fresh ``{key: value}`` dict whenever *prefix* changes."""
        with self._lock:
            if self._closed:
                raise Closed()
            if prefix in self._watches:
                raise AlreadyWatched(prefix)
            watch = DirectoryWatch(
                self.store, prefix, handler,
                resync_interval=self.resync_interval,
                retry_interval=self.watch_retry_interval,
            )
            self._watches[prefix] = watch
            watch.start()

    def remove_watch(self, prefix: str) -> None:
        """Stop a watch and wait until its task has exited."""
        with self._lock:
            if self._closed:
                raise Closed()
            watch = self._watches.pop(prefix, None)
            if watch is None:
                raise NotFound(prefix)
        watch.close()

    def registrations(self) -> List[str]:
        with self._lock:
            return sorted(self._registrations)

    def watches(self) -> List[str]:
        with self._lock:
            return sorted(self._watches)

    def get_registration(self, path: str) -> Optional[NodeRegistration]:
        with self._lock:
            return self._registrations.get(path)

    def close(self) -> None:
        """Stop everything and release the store. Safe to call more than once."""
        if not self._close_guard.acquire(blocking=False):
            return
        with self._lock:
            self._closed = True
            registrations, self._registrations = self._registrations, {}
            watches, self._watches = self._watches, {}

        # signal every child first so they tear down concurrently
        children = list(registrations.values()) + list(watches.values())
        for child in children:
            child.stop()
        for child in children:
            child.wait()
        self.store.close()
