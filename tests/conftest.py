"""Shared fixtures: in-memory Redis and scripted remote sessions."""

import asyncio
import fnmatch
import inspect
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

from lxcforge.remote.base import ExecResult, RemoteSession


COMPARE_AND_DELETE = re.compile(
    r'if redis\.call\("get", KEYS\[1\]\) == ARGV\[1\] then '
    r'return redis\.call\("del", KEYS\[1\]\) '
    r'else return (?P<otherwise>\d+) end'
)


class FakePipeline:
    """Queues calls and replays them on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._calls: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return record

    async def execute(self):
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls = []
        return results


class FakePubSub:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self.channels: List[str] = []
        self._queue: Optional[asyncio.Queue] = None

    async def subscribe(self, *channels: str):
        if self._queue is None:
            self._queue = asyncio.Queue()
        for channel in channels:
            self.channels.append(channel)
            self._redis.subscribers.setdefault(channel, []).append(self)

    def deliver(self, channel: str, data: str):
        if self._queue is not None:
            self._queue.put_nowait({"type": "message", "channel": channel, "data": data})

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        if self._queue is None:
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout or 0.001)
        except asyncio.TimeoutError:
            return None

    async def unsubscribe(self, *channels: str):
        for channel in channels or list(self.channels):
            subs = self._redis.subscribers.get(channel, [])
            if self in subs:
                subs.remove(self)
            if channel in self.channels:
                self.channels.remove(channel)

    async def aclose(self):
        await self.unsubscribe()


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the stores."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.sets: Dict[str, set] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[Tuple[str, str]] = []
        self.subscribers: Dict[str, List[FakePubSub]] = {}

    # keys

    async def ping(self):
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.sets, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(
            1 for key in keys
            if key in self.strings or key in self.lists or key in self.sets or key in self.hashes
        )

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    def keys_matching(self, pattern: str) -> List[str]:
        everything = set(self.strings) | set(self.lists) | set(self.sets) | set(self.hashes)
        return sorted(k for k in everything if fnmatch.fnmatch(k, pattern))

    # strings

    async def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def eval(self, script: str, numkeys: int, *args: str):
        """Compare-and-delete is the only script understood."""
        compact = re.sub(r"\s+", " ", script).strip()
        match = COMPARE_AND_DELETE.fullmatch(compact)
        if not match or numkeys != 1:
            raise NotImplementedError(f"Unsupported script: {compact}")
        key, token = args[0], args[1]
        if self.strings.get(key) == token:
            return await self.delete(key)
        return int(match.group("otherwise"))

    # lists

    def _list(self, key: str) -> List[str]:
        return self.lists.setdefault(key, [])

    def _drop_empty(self, key: str):
        if key in self.lists and not self.lists[key]:
            del self.lists[key]

    async def lpush(self, key: str, *values: Any) -> int:
        items = self._list(key)
        for value in values:
            items.insert(0, str(value))
        return len(items)

    async def rpush(self, key: str, *values: Any) -> int:
        items = self._list(key)
        items.extend(str(v) for v in values)
        return len(items)

    @staticmethod
    def _slice(items: List[str], start: int, end: int) -> List[str]:
        n = len(items)
        if start < 0:
            start = max(n + start, 0)
        if end < 0:
            end = n + end
        return items[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        return self._slice(self.lists.get(key, []), start, end)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        if key in self.lists:
            self.lists[key] = self._slice(self.lists[key], start, end)
            self._drop_empty(key)
        return True

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def lrem(self, key: str, count: int, value: Any) -> int:
        items = self.lists.get(key, [])
        before = len(items)
        self.lists[key] = [i for i in items if i != str(value)]
        self._drop_empty(key)
        return before - len(self.lists.get(key, []))

    async def lmove(self, source: str, destination: str, src: str = "LEFT", dest: str = "RIGHT"):
        items = self.lists.get(source)
        if not items:
            return None
        value = items.pop(0) if src == "LEFT" else items.pop()
        self._drop_empty(source)
        if dest == "LEFT":
            await self.lpush(destination, value)
        else:
            await self.rpush(destination, value)
        return value

    async def blmove(self, first_list: str, second_list: str, timeout: float, src: str = "LEFT", dest: str = "RIGHT"):
        deadline = time.monotonic() + timeout
        while True:
            value = await self.lmove(first_list, second_list, src, dest)
            if value is not None or time.monotonic() >= deadline:
                return value
            await asyncio.sleep(0.01)

    # sets

    async def sadd(self, key: str, *members: Any) -> int:
        items = self.sets.setdefault(key, set())
        before = len(items)
        items.update(str(m) for m in members)
        return len(items) - before

    async def srem(self, key: str, *members: Any) -> int:
        items = self.sets.get(key, set())
        removed = len(items & {str(m) for m in members})
        items.difference_update(str(m) for m in members)
        if key in self.sets and not items:
            del self.sets[key]
        return removed

    async def smembers(self, key: str) -> set:
        return set(self.sets.get(key, set()))

    async def sismember(self, key: str, member: Any) -> bool:
        return str(member) in self.sets.get(key, set())

    # hashes

    async def hset(self, key: str, field: str, value: Any) -> int:
        items = self.hashes.setdefault(key, {})
        added = 0 if field in items else 1
        items[field] = str(value)
        return added

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key: str, *fields: str) -> int:
        items = self.hashes.get(key, {})
        removed = sum(1 for f in fields if items.pop(f, None) is not None)
        if key in self.hashes and not items:
            del self.hashes[key]
        return removed

    # pub/sub

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        subs = self.subscribers.get(channel, [])
        for sub in subs:
            sub.deliver(channel, message)
        return len(subs)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self):
        pass


Handler = Callable[[str], ExecResult]


class FakeSession(RemoteSession):
    """Remote session answering from a command handler."""

    def __init__(self, handler: Optional[Handler] = None):
        self.handler = handler or (lambda command: ExecResult("", "", 0))
        self.commands: List[str] = []
        self.streamed: List[str] = []
        self.uploads: List[Tuple[str, str, int]] = []
        self.closed = False

    async def exec(self, command: str) -> ExecResult:
        self.commands.append(command)
        return self.handler(command)

    async def exec_streaming(self, command: str, on_line) -> int:
        self.streamed.append(command)
        result = self.handler(command)
        for line in result.stdout.splitlines():
            if line.strip():
                outcome = on_line(line, False)
                if inspect.isawaitable(outcome):
                    await outcome
        return result.exit_code

    async def upload_file(self, content, remote_path: str, mode: int = 0o644) -> None:
        if isinstance(content, bytes):
            content = content.decode()
        self.uploads.append((remote_path, content, mode))

    async def close(self) -> None:
        self.closed = True


def scripted(responses: Dict[str, ExecResult], default: Optional[ExecResult] = None) -> Handler:
    """Handler returning the response of the first substring found in the command."""
    def handler(command: str) -> ExecResult:
        for needle, result in responses.items():
            if needle in command:
                return result
        return default or ExecResult("", "", 0)
    return handler


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_session():
    """Factory for FakeSession objects."""
    def _make(responses: Optional[Dict[str, ExecResult]] = None, handler: Optional[Handler] = None):
        return FakeSession(handler or scripted(responses or {}))
    return _make


@pytest.fixture
def relayed_sessions():
    """SessionFactory stand-in in relayed mode; set .session before use."""
    factory = Mock()
    factory.is_relayed = True
    factory.open = AsyncMock()
    return factory


@pytest.fixture
def mock_proxmox():
    """Proxmox client whose tasks all succeed."""
    proxmox = AsyncMock()
    proxmox.create_container.return_value = "UPID:pve:create"
    proxmox.start_container.return_value = "UPID:pve:start"
    proxmox.stop_container.return_value = "UPID:pve:stop"
    proxmox.shutdown_container.return_value = "UPID:pve:shutdown"
    proxmox.delete_container.return_value = "UPID:pve:delete"
    proxmox.wait_for_task.return_value = {"status": "stopped", "exitstatus": "OK"}
    proxmox.get_container_status.return_value = {"status": "running"}
    proxmox.get_container_config.return_value = {"net0": "name=eth0,bridge=vmbr0,ip=dhcp"}
    proxmox.list_containers.return_value = []
    return proxmox
