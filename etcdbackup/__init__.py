"""etcd snapshot creation, retention and retrieval."""

__version__ = '0.1.0'
