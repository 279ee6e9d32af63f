"""
Service Registry on an etcd-like store

This package provides:
1. ServiceRegistry — coordinator for registrations and prefix watches
2. NodeRegistration — self-healing lease-backed registration of one key
3. DirectoryWatch — cached, continuously reconciled view of a prefix
4. KVStore — store capability interface, with InMemoryStore and EtcdStore
"""

from .directory import DirectoryWatch
from .errors import (
    AlreadyRegistered,
    AlreadyWatched,
    Closed,
    NotFound,
    ProtocolViolation,
    RegistryError,
    StoreUnavailable,
)
from .memory_store import InMemoryStore
from .node import NodeRegistration, RegistrationState
from .service_registry import ServiceRegistry
from .store import EventType, KeyValue, KVStore, Snapshot, Stream, WatchEvent

__version__ = '0.1.0'
__all__ = [
    'ServiceRegistry',
    'NodeRegistration',
    'RegistrationState',
    'DirectoryWatch',
    'KVStore',
    'InMemoryStore',
    'KeyValue',
    'Snapshot',
    'WatchEvent',
    'EventType',
    'Stream',
    'RegistryError',
    'AlreadyRegistered',
    'AlreadyWatched',
    'NotFound',
    'Closed',
    'StoreUnavailable',
    'ProtocolViolation',
]
