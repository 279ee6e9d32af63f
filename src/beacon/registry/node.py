"""Self-healing lease-backed registration of a single key."""

import queue
import sys
import threading
from enum import Enum
from typing import Optional

from .errors import RegistryError
from .store import STREAM_END, EventType, KVStore, pump


class RegistrationState(Enum):
    """Lifecycle of a NodeRegistration"""
    IDLE = "idle"
    REGISTERING = "registering"
    ACTIVE = "active"
    LOST = "lost"
    SUPERSEDED = "superseded"
    CLOSING = "closing"
    CLOSED = "closed"


# inbox message sources
_KEEPALIVE = "keepalive"
_WATCH = "watch"
_STOP = "stop"


class NodeRegistration:
    """Keeps ``path = value`` alive in the store until closed.

    Each attempt grants a lease, writes the key bound to it, then renews the
    lease and watches the key. The attempt ends when the lease is lost, the
    key is deleted, or another writer re-creates the key. Whatever the
    reason, the lease is revoked and the key is deleted only if its creation
    revision is still the one this attempt wrote, so a newer owner's key is
    never removed. The next attempt starts after a backoff.
    """

    def __init__(
        self,
        store: KVStore,
        path: str,
        value: str,
        ttl: int,
        retry_interval: float = 1.0,
        max_retry_interval: float = 30.0,
    ):
        self.store = store
        self.path = path
        self.value = value
        self.ttl = ttl
        self.retry_interval = retry_interval
        self.max_retry_interval = max_retry_interval

        self.lease_id: Optional[int] = None
        self.create_revision: Optional[int] = None

        self._state = RegistrationState.IDLE
        self._state_lock = threading.Lock()
        self._inbox: queue.Queue = queue.Queue()
        self._attempt = 0
        self._stop = threading.Event()
        self._close_guard = threading.Lock()
        self._thread = threading.Thread(
            target=self._run, name=f"registration:{path}", daemon=True,
        )

    @property
    def state(self) -> RegistrationState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: RegistrationState, reason: str = "") -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous != state:
            suffix = f" ({reason})" if reason else ""
            print(
                f"[registration] {self.path}: {previous.value} -> {state.value}{suffix}",
                file=sys.stderr,
            )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        """Request termination without waiting for it."""
        # first caller flips open -> closing; the rest only wait
        if not self._close_guard.acquire(blocking=False):
            return
        self._stop.set()
        self._inbox.put((None, _STOP, None))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task has exited. Returns False on timeout."""
        if self._thread.ident is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self) -> None:
        """Stop the registration and block until its cleanup is done."""
        self.stop()
        self.wait()

    def backoff(self, failures: int) -> float:
        """Delay before the next attempt after *failures* consecutive failed attempts."""
        return min(self.retry_interval * (2 ** failures), self.max_retry_interval)

    def _run(self) -> None:
        failures = 0
        try:
            while not self._stop.is_set():
                reached_active = self._register()
                if self._stop.is_set():
                    break
                failures = 0 if reached_active else failures + 1
                self._stop.wait(self.backoff(failures))
        finally:
            self._set_state(RegistrationState.CLOSED)

    def _register(self) -> bool:
        """Run one attempt. Returns True if it became active."""
        self._attempt += 1
        self._set_state(RegistrationState.REGISTERING)
        self.lease_id = None
        self.create_revision = None
        streams = []
        reached_active = False
        try:
            self.lease_id = self.store.grant(self.ttl)
            written = self.store.put(self.path, self.value, self.lease_id)
            self.create_revision = written.create_revision

            keepalive = self.store.keep_alive(self.lease_id)
            streams.append(keepalive)
            pump(keepalive, self._inbox, self._attempt, _KEEPALIVE)
            watch = self.store.watch(self.path, start_revision=written.mod_revision + 1)
            streams.append(watch)
            pump(watch, self._inbox, self._attempt, _WATCH)

            if self._stop.is_set():
                return False
            self._set_state(RegistrationState.ACTIVE)
            reached_active = True
            self._monitor()
        except RegistryError as exc:
            self._set_state(RegistrationState.LOST, str(exc))
        finally:
            for stream in streams:
                stream.cancel()
            if self._stop.is_set():
                self._set_state(RegistrationState.CLOSING)
            self._cleanup()
        return reached_active

    def _monitor(self) -> None:
        """Block until the key is lost, superseded, or a stop is requested."""
        while True:
            attempt, source, item = self._inbox.get()
            if source == _STOP:
                return
            if attempt != self._attempt:
                continue  # left over from an earlier attempt

            if source == _KEEPALIVE:
                if item is STREAM_END:
                    self._set_state(RegistrationState.LOST, "keepalive stream ended")
                    return
                if item <= 0:
                    self._set_state(RegistrationState.LOST, "lease expired")
                    return
                continue

            if item is STREAM_END:
                self._set_state(RegistrationState.LOST, "watch stream ended")
                return
            for event in item:
                if event.type is EventType.DELETE:
                    self._set_state(RegistrationState.LOST, "key deleted")
                    return
                if event.create_revision != self.create_revision:
                    self._set_state(RegistrationState.SUPERSEDED, "key re-created by another writer")
                    return

    def _cleanup(self) -> None:
        """Revoke this attempt's lease and delete the key if it is still ours."""
        if self.lease_id is not None:
            try:
                self.store.revoke(self.lease_id)
            except RegistryError as exc:
                print(f"[registration] {self.path}: revoke failed: {exc}", file=sys.stderr)
        if self.create_revision is not None:
            try:
                self.store.delete_if_created(self.path, self.create_revision)
            except RegistryError as exc:
                print(f"[registration] {self.path}: delete failed: {exc}", file=sys.stderr)
