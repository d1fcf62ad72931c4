"""Service discovery inside running containers."""

import logging
import re
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from lxcforge.models.service import DiscoveredService, ServiceCache
from lxcforge.remote.base import RemoteSession
from lxcforge.utils.crypto import CredentialCipher


logger = logging.getLogger(__name__)

CREDENTIALS_DIR = "/etc/infrahaus/credentials/"
EMPTY_MARKER = "__EMPTY__"

SYSTEM_SERVICES = {
    "console-getty",
    "cron",
    "dbus",
    "networking",
    "postfix",
    "ssh",
    "sshd",
    "containerd",
    "docker",
}
SYSTEM_SERVICE_PREFIXES = (
    "systemd-",
    "container-getty@",
    "getty@",
    "serial-getty@",
    "user@",
    "postfix@",
)

_PID_RE = re.compile(r"pid=(\d+)")
_INSTANCE_RE = re.compile(r"@.*$")


def service_cache_key(container_id: str) -> str:
    return f"container:{container_id}:services"


def is_system_service(name: str) -> bool:
    return name in SYSTEM_SERVICES or name.startswith(SYSTEM_SERVICE_PREFIXES)


def parse_credentials(content: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines. Splits on the first '=', ignores blank keys."""
    creds = {}
    for line in content.strip().splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            creds[key.strip()] = value.strip()
    return creds


@dataclass
class ListeningSocket:
    port: int
    pid: str
    family: str


def parse_listening_sockets(output: str) -> List[ListeningSocket]:
    """Parse `ss -tlnp` rows (header already stripped), one entry per port."""
    sockets = []
    seen_ports = set()
    for line in output.strip().splitlines():
        fields = line.split()
        pid_match = _PID_RE.search(line)
        if len(fields) < 4 or not pid_match:
            continue
        address, _, port_str = fields[3].rpartition(":")
        if not port_str.isdigit():
            continue
        port = int(port_str)
        if port in seen_ports:
            continue
        seen_ports.add(port)
        family = "ipv6" if address.startswith("[") or address.count(":") > 1 else "ipv4"
        sockets.append(ListeningSocket(port=port, pid=pid_match.group(1), family=family))
    return sockets


class ServiceDiscovery:
    """Finds running services, their ports and their provisioned credentials."""

    def __init__(self, cipher: CredentialCipher, credentials_dir: str = CREDENTIALS_DIR):
        """Initialize service discovery."""
        self.cipher = cipher
        self.credentials_dir = credentials_dir

    async def discover(self, session: RemoteSession) -> List[DiscoveredService]:
        """Discover services on the container behind session."""
        creds_by_service = await self._read_credentials(session)
        pid_to_port = await self._listening_ports(session)

        services: List[DiscoveredService] = []
        for unit in await self._running_units(session):
            name = unit[:-len(".service")] if unit.endswith(".service") else unit
            system = is_system_service(name)
            port = None if system else await self._resolve_port(session, unit, pid_to_port)

            base_name = _INSTANCE_RE.sub("", name)
            creds = creds_by_service.get(name) or creds_by_service.get(base_name)
            if creds:
                creds_by_service.pop(name, None)
                creds_by_service.pop(base_name, None)

            services.append(DiscoveredService(
                name=name,
                type="systemd",
                port=port,
                status="running",
                is_system=system,
                credentials=self.cipher.encrypt(creds) if creds else None,
            ))

        # Credentials left over belong to services that are not running
        for name, creds in creds_by_service.items():
            services.append(DiscoveredService(
                name=name,
                type="systemd",
                port=None,
                status="stopped",
                is_system=False,
                credentials=self.cipher.encrypt(creds),
            ))

        return services

    async def _read_credentials(self, session: RemoteSession) -> Dict[str, Dict[str, str]]:
        result = await session.exec(f"ls {self.credentials_dir} 2>/dev/null || echo '{EMPTY_MARKER}'")
        listing = result.stdout.strip()
        if not listing or listing == EMPTY_MARKER:
            return {}

        creds_by_service: Dict[str, Dict[str, str]] = {}
        for file_name in (f.strip() for f in listing.splitlines()):
            if not file_name:
                continue
            try:
                content = await session.exec(f"cat {shlex.quote(self.credentials_dir + file_name)}")
            except Exception as e:
                logger.debug(f"Skipping credentials file {file_name}: {e}")
                continue
            creds = parse_credentials(content.stdout)
            if creds:
                creds_by_service[file_name] = creds
        return creds_by_service

    async def _listening_ports(self, session: RemoteSession) -> Dict[str, int]:
        result = await session.exec("ss -tlnp 2>/dev/null | tail -n +2")
        pid_to_port: Dict[str, int] = {}
        for sock in parse_listening_sockets(result.stdout):
            pid_to_port.setdefault(sock.pid, sock.port)
        return pid_to_port

    async def _running_units(self, session: RemoteSession) -> List[str]:
        result = await session.exec(
            "systemctl list-units --type=service --state=running --no-pager --no-legend 2>/dev/null"
            " | awk '{print $1}'"
        )
        return [u.strip() for u in result.stdout.strip().splitlines() if u.strip()]

    async def _resolve_port(self, session: RemoteSession, unit: str, pid_to_port: Dict[str, int]) -> Optional[int]:
        """Port of the unit's main process, or of one of its children."""
        try:
            pid_result = await session.exec(f"systemctl show -p MainPID --value {shlex.quote(unit)} 2>/dev/null")
            main_pid = pid_result.stdout.strip()
            if not main_pid or main_pid == "0":
                return None
            if main_pid in pid_to_port:
                return pid_to_port[main_pid]

            children = await session.exec(f"pgrep -P {main_pid} 2>/dev/null || true")
            for child in children.stdout.strip().splitlines():
                if child.strip() in pid_to_port:
                    return pid_to_port[child.strip()]
        except Exception as e:
            logger.debug(f"Port probe failed for {unit}: {e}")
        return None

    async def discover_and_cache(
        self,
        redis,
        container_id: str,
        session: RemoteSession,
        container_ip: Optional[str],
    ) -> ServiceCache:
        """Discover and overwrite the container's service cache."""
        cache = ServiceCache(services=await self.discover(session), container_ip=container_ip)
        await redis.set(service_cache_key(container_id), cache.model_dump_json())
        return cache


async def get_cached_services(redis, container_id: str) -> Optional[ServiceCache]:
    """Cached discovery result, None if never discovered or unreadable."""
    raw = await redis.get(service_cache_key(container_id))
    if not raw:
        return None
    try:
        return ServiceCache.model_validate_json(raw)
    except ValueError as e:
        logger.warning(f"Discarding unreadable service cache for {container_id}: {e}")
        return None


async def clear_cached_services(redis, container_id: str) -> None:
    await redis.delete(service_cache_key(container_id))


def decrypt_service_credentials(cache: ServiceCache, cipher: CredentialCipher) -> Dict[str, Any]:
    """Cache contents with plaintext credential maps, for API responses."""
    services = []
    for service in cache.services:
        data = service.model_dump(exclude={"credentials"})
        data["credentials"] = cipher.decrypt(service.credentials) if service.credentials else None
        services.append(data)
    return {
        "services": services,
        "container_ip": cache.container_ip,
        "discovered_at": cache.discovered_at.isoformat(),
    }
