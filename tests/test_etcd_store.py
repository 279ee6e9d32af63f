"""Tests for the etcd adapter against a mocked etcd3 client."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

etcd3 = pytest.importorskip("etcd3")
grpc = pytest.importorskip("grpc")

from beacon.config import BeaconConfig  # noqa: E402
from beacon.registry import (  # noqa: E402
    EventType,
    NodeRegistration,
    ProtocolViolation,
    RegistrationState,
    ServiceRegistry,
    StoreUnavailable,
)
from beacon.registry.etcd_store import EtcdStore  # noqa: E402


class LeaseNotFound(grpc.RpcError):
    """What etcd answers for a revoke or put on an expired lease."""

    def code(self):
        return grpc.StatusCode.NOT_FOUND

    def details(self):
        return "etcdserver: requested lease not found"


def kv(key, value, create_revision, mod_revision, lease=0):
    return SimpleNamespace(
        key=key.encode(), value=value.encode(),
        create_revision=create_revision, mod_revision=mod_revision, lease=lease,
    )


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def etcd(client):
    return EtcdStore(client)


class TestReads:

    def test_get_prefix_decodes_keys(self, etcd, client):
        client.get_prefix_response.return_value = SimpleNamespace(
            header=SimpleNamespace(revision=42),
            kvs=[kv("svc/a", "1", 5, 6, lease=9)],
        )
        snapshot = etcd.get_prefix("svc/")
        client.get_prefix_response.assert_called_once_with("svc/")
        assert snapshot.revision == 42
        assert snapshot.to_dict() == {"svc/a": "1"}
        assert snapshot.items[0].lease_id == 9

    def test_client_errors_become_store_unavailable(self, etcd, client):
        client.get_prefix_response.side_effect = etcd3.exceptions.ConnectionFailedError()
        with pytest.raises(StoreUnavailable):
            etcd.get_prefix("svc/")


class TestWrites:

    def test_put_of_new_key(self, etcd, client):
        response = MagicMock()
        response.header.revision = 11
        response.HasField.return_value = False
        client.put.return_value = response

        written = etcd.put("svc/a", "1", 7)

        client.put.assert_called_once_with("svc/a", "1", lease=7, prev_kv=True)
        assert (written.create_revision, written.mod_revision) == (11, 11)

    def test_put_over_existing_key_keeps_creation_revision(self, etcd, client):
        response = MagicMock()
        response.header.revision = 11
        response.HasField.return_value = True
        response.prev_kv.create_revision = 4
        client.put.return_value = response

        written = etcd.put("svc/a", "1")

        assert client.put.call_args.kwargs["lease"] is None
        assert written.create_revision == 4

    def test_revoke_of_lost_lease_is_a_store_error(self, etcd, client):
        client.revoke_lease.side_effect = LeaseNotFound()
        with pytest.raises(StoreUnavailable, match="requested lease not found"):
            etcd.revoke(3)

    def test_put_on_lost_lease_is_a_store_error(self, etcd, client):
        client.put.side_effect = LeaseNotFound()
        with pytest.raises(StoreUnavailable):
            etcd.put("svc/a", "1", 3)

    def test_grant_without_id_is_a_protocol_violation(self, etcd, client):
        client.lease.return_value = SimpleNamespace(id=0)
        with pytest.raises(ProtocolViolation):
            etcd.grant(10)

    def test_conditional_delete_uses_create_revision(self, etcd, client):
        client.transaction.return_value = (False, [])
        assert etcd.delete_if_created("svc/a", 5) is False
        client.transactions.create.assert_called_once_with("svc/a")
        client.transactions.delete.assert_called_once_with("svc/a")


class TestStreams:

    def test_watch_converts_events_and_cancels(self, etcd, client):
        callbacks = []
        client.add_watch_prefix_callback.side_effect = (
            lambda key, callback, **kwargs: callbacks.append((kwargs, callback)) or 7
        )

        stream = etcd.watch("svc/", start_revision=43, prefix=True)
        kwargs, callback = callbacks[0]
        assert kwargs == {"start_revision": 43}

        callback(SimpleNamespace(events=[
            etcd3.events.PutEvent(SimpleNamespace(kv=kv("svc/a", "1", 43, 43))),
            etcd3.events.DeleteEvent(SimpleNamespace(kv=kv("svc/b", "", 0, 43))),
        ]))
        stream.cancel()

        batches = list(stream)
        client.cancel_watch.assert_called_once_with(7)
        assert [(e.type, e.key, e.value) for e in batches[0]] == [
            (EventType.PUT, "svc/a", "1"),
            (EventType.DELETE, "svc/b", ""),
        ]

    def test_watch_error_ends_stream(self, etcd, client):
        callbacks = []
        client.add_watch_callback.side_effect = (
            lambda key, callback, **kwargs: callbacks.append(callback) or 1
        )
        stream = etcd.watch("svc/a")
        callbacks[0](etcd3.exceptions.ConnectionFailedError())
        assert list(stream) == []
        assert isinstance(stream.error, StoreUnavailable)

    def test_keep_alive_ends_when_lease_is_gone(self, etcd, client):
        client.refresh_lease.side_effect = [
            iter([SimpleNamespace(TTL=1)]),
            iter([SimpleNamespace(TTL=0)]),
        ]
        stream = etcd.keep_alive(3)
        assert list(stream) == [1]
        assert stream.error is None

    def test_keep_alive_rpc_error_ends_stream_with_error(self, etcd, client):
        client.refresh_lease.side_effect = LeaseNotFound()
        stream = etcd.keep_alive(3)
        assert list(stream) == []
        assert isinstance(stream.error, StoreUnavailable)


class TestRegistrationOverEtcd:

    def test_lease_loss_with_failing_revoke_is_retried(self, etcd, client, wait_for, capsys):
        lease_ids = iter(range(1, 100))
        client.lease.side_effect = lambda ttl: SimpleNamespace(id=next(lease_ids))
        response = MagicMock()
        response.header.revision = 11
        response.HasField.return_value = False
        client.put.return_value = response
        # the lease is gone on the first renewal
        client.refresh_lease.side_effect = lambda lease_id: iter([SimpleNamespace(TTL=0)])
        client.add_watch_callback.return_value = 1
        client.revoke_lease.side_effect = LeaseNotFound()
        client.transaction.return_value = (True, [])

        registration = NodeRegistration(
            etcd, "svc/a", "1", ttl=1, retry_interval=0.05, max_retry_interval=0.1,
        )
        registration.start()
        try:
            assert wait_for(lambda: client.lease.call_count >= 2)
            assert client.transaction.called
            assert registration.state is not RegistrationState.CLOSED
        finally:
            registration.close()

        assert registration.state is RegistrationState.CLOSED
        assert "revoke failed" in capsys.readouterr().err


class TestConnect:

    def test_single_endpoint(self, monkeypatch):
        factory = MagicMock()
        monkeypatch.setattr(etcd3, "client", factory)
        EtcdStore.connect(["etcd:12379"], username="u", password="p", timeout=2.0)
        factory.assert_called_once_with(host="etcd", port=12379, user="u", password="p", timeout=2.0)
        factory.return_value.status.assert_called_once_with()

    def test_skips_unreachable_endpoint(self, monkeypatch):
        down, up = MagicMock(), MagicMock()
        down.status.side_effect = etcd3.exceptions.ConnectionFailedError()
        factory = MagicMock(side_effect=[down, up])
        monkeypatch.setattr(etcd3, "client", factory)

        store = EtcdStore.connect(["10.0.0.1:2379", "10.0.0.2:2379"])

        assert [c.kwargs["host"] for c in factory.call_args_list] == ["10.0.0.1", "10.0.0.2"]
        down.close.assert_called_once_with()
        assert store._client is up

    def test_no_reachable_endpoint(self, monkeypatch):
        client = MagicMock()
        client.status.side_effect = etcd3.exceptions.ConnectionFailedError()
        monkeypatch.setattr(etcd3, "client", MagicMock(return_value=client))

        with pytest.raises(StoreUnavailable, match="10.0.0.1:2379.*10.0.0.2:2379"):
            EtcdStore.connect(["10.0.0.1:2379", "10.0.0.2:2379"])

    def test_registry_from_config(self, monkeypatch):
        captured = {}

        def connect(endpoints, username=None, password=None, timeout=5.0):
            captured.update(endpoints=endpoints, password=password, timeout=timeout)
            return EtcdStore(MagicMock())

        monkeypatch.setenv("BEACON_PASSWORD", "from-env")
        monkeypatch.setattr(EtcdStore, "connect", staticmethod(connect))
        registry = ServiceRegistry.from_config(BeaconConfig(ttl=4, dial_timeout=1.5))
        try:
            assert registry.ttl == 4
            assert captured == {"endpoints": ["localhost:2379"], "password": "from-env", "timeout": 1.5}
        finally:
            registry.close()
