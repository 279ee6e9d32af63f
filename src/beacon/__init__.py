"""beacon: service registration and discovery on etcd."""
