"""
etcd-backed KVStore

Maps the registry's store primitives onto the python-etcd3 client. Lease
renewal runs on a daemon thread per lease; watches use etcd3's callback API
and are cancelled through their watch id.
"""

import threading
from contextlib import contextmanager
from typing import List, Optional

import etcd3
import etcd3.events
import etcd3.exceptions
import grpc

from ..config import parse_endpoint
from .errors import ProtocolViolation, StoreUnavailable
from .store import EventType, KeyValue, KVStore, Snapshot, Stream, WatchEvent


# etcd3 only translates a few gRPC codes; the rest (NOT_FOUND for a lost
# lease, PERMISSION_DENIED, ...) surface as raw grpc.RpcError
_CLIENT_ERRORS = (etcd3.exceptions.Etcd3Exception, grpc.RpcError)


def _describe(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    details = getattr(exc, "details", None)
    if callable(code) and callable(details):
        return f"{code()}: {details()}"
    return str(exc) or type(exc).__name__


@contextmanager
def _store_errors(operation: str):
    try:
        yield
    except _CLIENT_ERRORS as exc:
        raise StoreUnavailable(f"{operation} failed: {_describe(exc)}") from exc


def _decode(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return raw or ""


def _to_event(event) -> WatchEvent:
    if isinstance(event, etcd3.events.DeleteEvent):
        kind = EventType.DELETE
    elif isinstance(event, etcd3.events.PutEvent):
        kind = EventType.PUT
    else:
        raise ProtocolViolation(f"unexpected watch event: {event!r}")
    return WatchEvent(
        type=kind,
        key=_decode(event.key),
        value=_decode(event.value) if kind is EventType.PUT else "",
        create_revision=event.create_revision,
        mod_revision=event.mod_revision,
    )


class EtcdStore(KVStore):
    """KVStore over an etcd v3 cluster."""

    def __init__(self, client):
        self._client = client

    @classmethod
    def connect(
        cls,
        endpoints: List[str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
    ) -> "EtcdStore":
        """Connect to the first reachable member of *endpoints* (``host:port`` strings).

        Members are tried in order; each must answer a status call, so an
        unreachable one is skipped. Raises StoreUnavailable if none answers.
        """
        hosts = [parse_endpoint(e) for e in endpoints]
        if not hosts:
            raise ValueError("at least one etcd endpoint is required")
        failures = []
        for host, port in hosts:
            client = None
            try:
                client = etcd3.client(
                    host=host, port=port, user=username, password=password, timeout=timeout,
                )
                client.status()
            except _CLIENT_ERRORS as exc:
                failures.append(f"{host}:{port} ({_describe(exc)})")
                if client is not None:
                    client.close()
                continue
            return cls(client)
        raise StoreUnavailable(f"no etcd endpoint reachable: {', '.join(failures)}")

    def get_prefix(self, prefix: str) -> Snapshot:
        with _store_errors("get"):
            response = self._client.get_prefix_response(prefix)
        items = [
            KeyValue(
                key=_decode(kv.key),
                value=_decode(kv.value),
                create_revision=kv.create_revision,
                mod_revision=kv.mod_revision,
                lease_id=kv.lease,
            )
            for kv in response.kvs
        ]
        return Snapshot(revision=response.header.revision, items=items)

    def put(self, key: str, value: str, lease_id: int = 0) -> KeyValue:
        with _store_errors("put"):
            response = self._client.put(key, value, lease=lease_id or None, prev_kv=True)
        revision = response.header.revision
        if not revision:
            raise ProtocolViolation("put response carries no revision")
        create_revision = revision
        if response.HasField("prev_kv") and response.prev_kv.create_revision:
            create_revision = response.prev_kv.create_revision
        return KeyValue(key, value, create_revision, revision, lease_id)

    def grant(self, ttl: int) -> int:
        with _store_errors("grant"):
            lease = self._client.lease(ttl)
        if not lease.id:
            raise ProtocolViolation("grant returned no lease id")
        return lease.id

    def revoke(self, lease_id: int) -> None:
        with _store_errors("revoke"):
            self._client.revoke_lease(lease_id)

    def keep_alive(self, lease_id: int) -> Stream:
        stop = threading.Event()
        stream = Stream(on_cancel=stop.set)

        def renew():
            try:
                while not stop.is_set():
                    ttl = None
                    for response in self._client.refresh_lease(lease_id):
                        ttl = response.TTL
                    if not ttl or ttl <= 0:
                        break  # lease is gone
                    stream.push(ttl)
                    stop.wait(max(ttl / 3.0, 0.5))
            except _CLIENT_ERRORS as exc:
                stream.finish(StoreUnavailable(f"keepalive failed: {_describe(exc)}"))
                return
            stream.finish()

        threading.Thread(target=renew, name=f"etcd-keepalive-{lease_id}", daemon=True).start()
        return stream

    def watch(self, key: str, start_revision: Optional[int] = None,
              prefix: bool = False) -> Stream:
        watch_id = None
        stream = Stream(on_cancel=lambda: self._cancel_watch(watch_id))

        def callback(response):
            if isinstance(response, Exception):
                stream.finish(StoreUnavailable(f"watch failed: {_describe(response)}"))
                return
            try:
                events = [_to_event(e) for e in response.events]
            except ProtocolViolation as exc:
                stream.finish(exc)
                return
            if events:
                stream.push(events)

        kwargs = {}
        if start_revision is not None:
            kwargs["start_revision"] = start_revision
        with _store_errors("watch"):
            if prefix:
                watch_id = self._client.add_watch_prefix_callback(key, callback, **kwargs)
            else:
                watch_id = self._client.add_watch_callback(key, callback, **kwargs)
        return stream

    def _cancel_watch(self, watch_id) -> None:
        if watch_id is None:
            return
        try:
            self._client.cancel_watch(watch_id)
        except _CLIENT_ERRORS:
            pass  # the watch is gone either way

    def delete_if_created(self, key: str, create_revision: int) -> bool:
        with _store_errors("conditional delete"):
            succeeded, _ = self._client.transaction(
                compare=[self._client.transactions.create(key) == create_revision],
                success=[self._client.transactions.delete(key)],
                failure=[],
            )
        return bool(succeeded)

    def close(self) -> None:
        self._client.close()
