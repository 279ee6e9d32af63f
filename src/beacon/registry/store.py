"""
Key-value store capability interface

The registry only needs a handful of primitives from an etcd-like store:
prefix reads with a snapshot revision, lease-bound puts, lease grant/revoke,
a keepalive stream, a watch stream and a compare-and-delete on the creation
revision. Anything implementing KVStore can back a ServiceRegistry.
"""

import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional


class EventType(Enum):
    """Kind of change reported by a watch."""
    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class KeyValue:
    """A key as stored, with its revision bookkeeping."""
    key: str
    value: str
    create_revision: int
    mod_revision: int
    lease_id: int = 0


@dataclass(frozen=True)
class Snapshot:
    """All keys under a prefix at a single store revision."""
    revision: int
    items: List[KeyValue]

    def to_dict(self) -> Dict[str, str]:
        return {kv.key: kv.value for kv in self.items}


@dataclass(frozen=True)
class WatchEvent:
    """One put or delete observed on a watched key or prefix."""
    type: EventType
    key: str
    value: str = ""
    create_revision: int = 0
    mod_revision: int = 0


_END = object()


class Stream:
    """Blocking iterator over items pushed by a store connection.

    The producer calls push() and finish(); the consumer iterates until the
    stream finishes. cancel() may be called from any thread and ends the
    iteration; *on_cancel* lets the producer release whatever feeds the
    stream (a watch id, a renewal thread).
    """

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._queue: queue.Queue = queue.Queue()
        self._on_cancel = on_cancel
        self._lock = threading.Lock()
        self._finished = False
        self.cancelled = False
        self.error: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        return self._finished

    def push(self, item) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._queue.put(item)
        return True

    def finish(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self.error = error
            self._queue.put(_END)

    def cancel(self) -> None:
        with self._lock:
            if self._finished:
                return
            self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()
        self.finish()

    def __iter__(self) -> Iterator:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item


STREAM_END = object()


def pump(stream: Stream, inbox: queue.Queue, tag, source: str) -> threading.Thread:
    """Forward every item of *stream* into *inbox* as ``(tag, source, item)``.

    A final ``(tag, source, STREAM_END)`` is posted once the stream is done,
    so one queue can multiplex several streams.
    """

    def run():
        for item in stream:
            inbox.put((tag, source, item))
        inbox.put((tag, source, STREAM_END))

    thread = threading.Thread(target=run, name=f"pump-{source}-{tag}", daemon=True)
    thread.start()
    return thread


class KVStore(ABC):
    """Primitives the registry needs from an etcd-like store.

    Every method may raise StoreUnavailable on transient I/O failure and
    ProtocolViolation on a malformed response.
    """

    @abstractmethod
    def get_prefix(self, prefix: str) -> Snapshot:
        """Read every key under *prefix*, ordered by key."""

    @abstractmethod
    def put(self, key: str, value: str, lease_id: int = 0) -> KeyValue:
        """Create or overwrite *key*, optionally bound to a lease."""

    @abstractmethod
    def grant(self, ttl: int) -> int:
        """Grant a lease expiring after *ttl* seconds without renewal."""

    @abstractmethod
    def revoke(self, lease_id: int) -> None:
        """Revoke a lease, deleting every key bound to it."""

    @abstractmethod
    def keep_alive(self, lease_id: int) -> Stream:
        """Renew a lease continuously.

        The stream yields the remaining TTL after each renewal and ends when
        the lease is lost or renewal fails.
        """

    @abstractmethod
    def watch(self, key: str, start_revision: Optional[int] = None,
              prefix: bool = False) -> Stream:
        """Watch a key (or every key under a prefix).

        The stream yields lists of WatchEvent, one list per store response,
        in revision order. *start_revision* is inclusive.
        """

    @abstractmethod
    def delete_if_created(self, key: str, create_revision: int) -> bool:
        """Delete *key* only if its creation revision is *create_revision*."""

    def close(self) -> None:
        """Release the connection."""
