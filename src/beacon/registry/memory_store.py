"""
In-memory key-value store

InMemoryStore mirrors the parts of etcd the registry relies on: a single
store-wide revision counter, leases that expire unless renewed, watches that
can replay history from a start revision back to the last compaction
(automatic once more than *max_history* revisions are kept), and a
compare-and-delete on the creation revision. It is used by the test-suite
and for local runs without a cluster, and exposes a few controls to
simulate third-party writers, lease expiry, outages and server-side watch
cancellation.
"""

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .errors import StoreUnavailable
from .store import EventType, KeyValue, KVStore, Snapshot, Stream, WatchEvent


@dataclass
class _Lease:
    lease_id: int
    ttl: int
    expires_at: float
    keys: Set[str] = field(default_factory=set)
    keepalives: List[Stream] = field(default_factory=list)


@dataclass
class _Watcher:
    key: str
    prefix: bool
    stream: Stream

    def matches(self, key: str) -> bool:
        if self.prefix:
            return key.startswith(self.key)
        return key == self.key


class InMemoryStore(KVStore):
    """Thread-safe, dict-backed store with etcd revision and lease semantics."""

    def __init__(self, keepalive_interval: Optional[float] = None,
                 reap_interval: float = 0.05, max_history: Optional[int] = 1000):
        self._lock = threading.RLock()
        self._revision = 1
        self._keys: Dict[str, KeyValue] = {}
        self._leases: Dict[int, _Lease] = {}
        self._lease_ids = itertools.count(1)
        self._history: List[Tuple[int, List[WatchEvent]]] = []
        self._max_history = max_history
        self._compact_revision = 0
        self._watchers: List[_Watcher] = []
        self._available = True
        self._keepalive_interval = keepalive_interval
        self._reap_interval = reap_interval
        self._closed = threading.Event()
        self._reaper = threading.Thread(target=self._reap, name="memory-store-reaper", daemon=True)
        self._reaper.start()

    # -- KVStore ------------------------------------------------------------

    def get_prefix(self, prefix: str) -> Snapshot:
        with self._lock:
            self._check()
            items = [kv for key, kv in sorted(self._keys.items()) if key.startswith(prefix)]
            return Snapshot(revision=self._revision, items=items)

    def put(self, key: str, value: str, lease_id: int = 0) -> KeyValue:
        with self._lock:
            self._check()
            if lease_id and lease_id not in self._leases:
                raise StoreUnavailable(f"requested lease not found: {lease_id}")
            self._revision += 1
            prev = self._keys.get(key)
            if prev is not None and prev.lease_id in self._leases:
                self._leases[prev.lease_id].keys.discard(key)
            kv = KeyValue(
                key=key,
                value=value,
                create_revision=prev.create_revision if prev else self._revision,
                mod_revision=self._revision,
                lease_id=lease_id,
            )
            self._keys[key] = kv
            if lease_id:
                self._leases[lease_id].keys.add(key)
            self._emit([WatchEvent(EventType.PUT, key, value, kv.create_revision, kv.mod_revision)])
            return kv

    def grant(self, ttl: int) -> int:
        if ttl <= 0:
            raise ValueError(f"lease ttl must be positive, got {ttl}")
        with self._lock:
            self._check()
            lease_id = next(self._lease_ids)
            self._leases[lease_id] = _Lease(lease_id, ttl, time.monotonic() + ttl)
            return lease_id

    def revoke(self, lease_id: int) -> None:
        with self._lock:
            self._check()
            if lease_id not in self._leases:
                raise StoreUnavailable(f"requested lease not found: {lease_id}")
            self._drop_lease(lease_id)

    def keep_alive(self, lease_id: int) -> Stream:
        stop = threading.Event()
        stream = Stream(on_cancel=stop.set)
        with self._lock:
            self._check()
            lease = self._leases.get(lease_id)
            if lease is None:
                raise StoreUnavailable(f"requested lease not found: {lease_id}")
            lease.keepalives.append(stream)
            interval = self._keepalive_interval or max(lease.ttl / 3.0, 0.05)

        def renew():
            while not stop.is_set() and not self._closed.is_set():
                if stream.finished:
                    return
                with self._lock:
                    lease = self._leases.get(lease_id)
                    if lease is None:
                        stream.finish()
                        return
                    if not self._available:
                        stream.finish(StoreUnavailable("keepalive failed: store unavailable"))
                        return
                    lease.expires_at = time.monotonic() + lease.ttl
                    stream.push(lease.ttl)
                stop.wait(interval)
            stream.finish()

        threading.Thread(target=renew, name=f"memory-store-keepalive-{lease_id}", daemon=True).start()
        return stream

    def watch(self, key: str, start_revision: Optional[int] = None,
              prefix: bool = False) -> Stream:
        stream = Stream(on_cancel=lambda: self._remove_watcher(watcher))
        watcher = _Watcher(key, prefix, stream)
        with self._lock:
            self._check()
            if start_revision is not None and start_revision < self._compact_revision:
                stream.finish(StoreUnavailable(
                    f"required revision {start_revision} has been compacted "
                    f"(compacted at {self._compact_revision})"
                ))
                return stream
            if start_revision is not None:
                for revision, events in self._history:
                    if revision < start_revision:
                        continue
                    matched = [e for e in events if watcher.matches(e.key)]
                    if matched:
                        stream.push(matched)
            self._watchers.append(watcher)
        return stream

    def delete_if_created(self, key: str, create_revision: int) -> bool:
        with self._lock:
            self._check()
            kv = self._keys.get(key)
            if kv is None or kv.create_revision != create_revision:
                return False
            self._delete_keys([key])
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._fail_streams(StoreUnavailable("store is closed"))

    # -- test controls ------------------------------------------------------

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def get(self, key: str) -> Optional[KeyValue]:
        with self._lock:
            return self._keys.get(key)

    def leases(self) -> List[int]:
        with self._lock:
            return sorted(self._leases)

    def delete(self, key: str) -> bool:
        """Delete a key regardless of who owns it, as a third party would."""
        with self._lock:
            self._check()
            if key not in self._keys:
                return False
            self._delete_keys([key])
            return True

    def compact(self, revision: int) -> None:
        """Drop watch history older than *revision*.

        Watches asking to start before the compaction point fail, as they
        do against etcd.
        """
        with self._lock:
            if revision > self._revision:
                raise ValueError(f"cannot compact future revision {revision}")
            self._compact(revision)

    def expire(self, lease_id: int) -> None:
        """Expire a lease server-side, as if renewals had stopped arriving."""
        with self._lock:
            self._drop_lease(lease_id)

    def set_available(self, available: bool) -> None:
        """Simulate an outage: every call fails and open streams are broken."""
        with self._lock:
            self._available = available
            if not available:
                self._fail_streams(StoreUnavailable("store unavailable"))

    def drop_watches(self) -> None:
        """Cancel every open watch server-side."""
        with self._lock:
            watchers, self._watchers = self._watchers, []
            for watcher in watchers:
                watcher.stream.finish(StoreUnavailable("watch cancelled by server"))

    # -- internals ----------------------------------------------------------

    def _check(self) -> None:
        if self._closed.is_set():
            raise StoreUnavailable("store is closed")
        if not self._available:
            raise StoreUnavailable("store unavailable")

    def _emit(self, events: List[WatchEvent]) -> None:
        self._history.append((self._revision, events))
        if self._max_history and len(self._history) > self._max_history:
            self._compact(self._history[-self._max_history][0])
        for watcher in self._watchers:
            matched = [e for e in events if watcher.matches(e.key)]
            if matched:
                watcher.stream.push(matched)

    def _compact(self, revision: int) -> None:
        if revision <= self._compact_revision:
            return
        self._history = [entry for entry in self._history if entry[0] >= revision]
        self._compact_revision = revision

    def _delete_keys(self, keys: List[str]) -> None:
        self._revision += 1
        events = []
        for key in keys:
            kv = self._keys.pop(key)
            if kv.lease_id in self._leases:
                self._leases[kv.lease_id].keys.discard(key)
            events.append(WatchEvent(EventType.DELETE, key, "", kv.create_revision, self._revision))
        self._emit(events)

    def _drop_lease(self, lease_id: int) -> None:
        lease = self._leases.pop(lease_id, None)
        if lease is None:
            return
        keys = sorted(k for k in lease.keys if k in self._keys)
        if keys:
            self._delete_keys(keys)
        for stream in lease.keepalives:
            stream.finish()

    def _remove_watcher(self, watcher: _Watcher) -> None:
        with self._lock:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

    def _fail_streams(self, error: Exception) -> None:
        watchers, self._watchers = self._watchers, []
        for watcher in watchers:
            watcher.stream.finish(error)
        for lease in self._leases.values():
            for stream in lease.keepalives:
                stream.finish(error)
            lease.keepalives.clear()

    def _reap(self) -> None:
        while not self._closed.wait(self._reap_interval):
            now = time.monotonic()
            with self._lock:
                expired = [lease.lease_id for lease in self._leases.values() if lease.expires_at <= now]
                for lease_id in expired:
                    self._drop_lease(lease_id)
