"""Redis-backed stores."""

from lxcforge.store.connection import create_redis
from lxcforge.store.lock import RedisLock, container_lock_key
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache

__all__ = [
    "create_redis",
    "RedisLock",
    "container_lock_key",
    "RecordStore",
    "VmidCache",
]
