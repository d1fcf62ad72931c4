"""Per-node cache of VMIDs already taken on the hypervisor."""

import logging
from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from lxcforge.proxmox.client import ProxmoxClient

logger = logging.getLogger(__name__)

VMID_CACHE_PREFIX = "vmid-cache:"
VMID_CACHE_TTL = 300


class VmidCache:
    """Soft pre-check only. The hypervisor rejects duplicates at create time."""

    def __init__(self, redis, ttl: int = VMID_CACHE_TTL):
        """Initialize VMID cache."""
        self.redis = redis
        self.ttl = ttl

    @staticmethod
    def key(node_id: str) -> str:
        return f"{VMID_CACHE_PREFIX}{node_id}"

    async def refresh(self, node_id: str, node_name: str, client: "ProxmoxClient") -> List[int]:
        """Reload the taken set from the hypervisor."""
        containers = await client.list_containers(node_name)
        vmids = [int(c["vmid"]) for c in containers if "vmid" in c]
        key = self.key(node_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(key)
        if vmids:
            pipe.sadd(key, *[str(v) for v in vmids])
        pipe.expire(key, self.ttl)
        await pipe.execute()
        logger.debug(f"VMID cache for {node_id} refreshed with {len(vmids)} entries")
        return vmids

    async def is_taken(self, node_id: str, vmid: int) -> bool:
        """False when the cache has expired."""
        return bool(await self.redis.sismember(self.key(node_id), str(vmid)))

    async def get_cached(self, node_id: str) -> List[int]:
        members = await self.redis.smembers(self.key(node_id))
        return sorted(int(m) for m in members)

    async def invalidate(self, node_id: str) -> None:
        await self.redis.delete(self.key(node_id))
