"""Cached, continuously reconciled view of every key under a prefix."""

import queue
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from .errors import RegistryError
from .store import STREAM_END, EventType, KVStore, WatchEvent, pump

WatchHandler = Callable[[Dict[str, str]], None]

_WATCH = "watch"
_STOP = "stop"


class DirectoryWatch:
    """Delivers a fresh ``{key: value}`` copy of a prefix on every change.

    A full snapshot bootstraps the cache, then the prefix watch is applied
    batch by batch. Every *resync_interval* seconds the cache is replaced by
    a fresh read, which heals any drift from missed or compacted events. If
    the watch stream breaks the whole cycle restarts after
    *retry_interval*.
    """

    def __init__(
        self,
        store: KVStore,
        prefix: str,
        handler: WatchHandler,
        resync_interval: float = 5.0,
        retry_interval: float = 1.0,
    ):
        self.store = store
        self.prefix = prefix
        self.handler = handler
        self.resync_interval = resync_interval
        self.retry_interval = retry_interval

        self._cache: Dict[str, str] = {}
        self._cache_lock = threading.Lock()
        self.last_revision = 0

        self._inbox: queue.Queue = queue.Queue()
        self._cycle = 0
        self._stop = threading.Event()
        self._close_guard = threading.Lock()
        self._thread = threading.Thread(
            target=self._run, name=f"watch:{prefix}", daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        if not self._close_guard.acquire(blocking=False):
            return
        self._stop.set()
        self._inbox.put((None, _STOP, None))

    def wait(self, timeout: Optional[float] = None) -> bool:
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self) -> None:
        """Stop watching and block until the task has exited."""
        self.stop()
        self.wait()

    def _run(self) -> None:
        while not self._stop.is_set():
            stream = None
            try:
                self._resync()
                self._cycle += 1
                stream = self.store.watch(
                    self.prefix, start_revision=self.last_revision + 1, prefix=True,
                )
                pump(stream, self._inbox, self._cycle, _WATCH)
                self._follow()
            except RegistryError as exc:
                print(f"[watch] {self.prefix}: {exc}", file=sys.stderr)
            finally:
                if stream is not None:
                    stream.cancel()
            if self._stop.wait(self.retry_interval):
                break

    def _follow(self) -> None:
        """Apply watch batches and periodic resyncs until the stream ends or a stop arrives."""
        deadline = time.monotonic() + self.resync_interval
        while True:
            try:
                cycle, source, item = self._inbox.get(timeout=max(deadline - time.monotonic(), 0))
            except queue.Empty:
                self._resync()
                deadline = time.monotonic() + self.resync_interval
                continue

            if source == _STOP:
                return
            if cycle != self._cycle:
                continue
            if item is STREAM_END:
                print(f"[watch] {self.prefix}: stream ended, resyncing", file=sys.stderr)
                return
            if self.apply(item):
                self._deliver()

    def _resync(self) -> None:
        snapshot = self.store.get_prefix(self.prefix)
        with self._cache_lock:
            self._cache = snapshot.to_dict()
            self.last_revision = snapshot.revision
        self._deliver()

    def apply(self, events: List[WatchEvent]) -> bool:
        """Apply one batch to the cache. Returns False if every event was stale.

        Events at or below ``last_revision`` are already reflected by a newer
        snapshot and are skipped.
        """
        applied = False
        with self._cache_lock:
            floor = self.last_revision
            for event in events:
                if event.mod_revision and event.mod_revision <= floor:
                    continue
                if event.type is EventType.PUT:
                    self._cache[event.key] = event.value
                else:
                    self._cache.pop(event.key, None)
                applied = True
                self.last_revision = max(self.last_revision, event.mod_revision)
        return applied

    def snapshot(self) -> Dict[str, str]:
        """Copy of the current cache; safe to call from any thread."""
        with self._cache_lock:
            return dict(self._cache)

    def _deliver(self) -> None:
        try:
            self.handler(self.snapshot())
        except Exception as exc:
            print(f"[watch] {self.prefix}: handler raised {exc!r}", file=sys.stderr)
