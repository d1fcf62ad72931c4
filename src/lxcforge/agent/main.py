"""Main agent implementation."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional

from watchfiles import awatch

from lxcforge.agent.config import ConfigManager
from lxcforge.agent.creation import CreationService
from lxcforge.agent.discovery import ServiceDiscovery
from lxcforge.agent.lifecycle import LifecycleManager
from lxcforge.agent.pipeline import CreationPipeline
from lxcforge.agent.progress import ProgressPublisher
from lxcforge.agent.queue import JobQueue
from lxcforge.agent.server import AgentServer
from lxcforge.agent.worker import CreationWorker
from lxcforge.proxmox.client import ProxmoxClient
from lxcforge.remote.registry import SessionFactory
from lxcforge.store.connection import create_redis
from lxcforge.store.lock import RedisLock
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache
from lxcforge.utils.crypto import CredentialCipher
from lxcforge.utils.logging import setup_logging


logger = logging.getLogger(__name__)


class ForgeAgent:
    """Owns every long-lived component and wires them together."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the agent."""
        self.config_dir = config_dir or Path("./configs")
        self.config_manager: Optional[ConfigManager] = None
        self.redis = None
        self.proxmox: Optional[ProxmoxClient] = None
        self.worker: Optional[CreationWorker] = None
        self.server: Optional[AgentServer] = None
        self.shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Initialize agent components."""
        self.config_manager = ConfigManager(self.config_dir)
        await self.config_manager.load()
        config = self.config_manager.config
        setup_logging(config.agent.log_level)

        if not config.security.encryption_key:
            logger.warning("ENCRYPTION_KEY not set, discovered credentials will not be stored")

        state_dir = Path(config.agent.state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)

        self.redis = create_redis(config.redis.url)
        self.proxmox = ProxmoxClient(config.proxmox)

        cipher = CredentialCipher(config.security.encryption_key)
        records = RecordStore(self.redis)
        vmid_cache = VmidCache(self.redis)
        publisher = ProgressPublisher(self.redis, records)
        queue = JobQueue(self.redis)
        sessions = SessionFactory(config)
        discovery = ServiceDiscovery(cipher)

        pipeline = CreationPipeline(
            proxmox=self.proxmox,
            sessions=sessions,
            publisher=publisher,
            records=records,
            discovery=discovery,
            vmid_cache=vmid_cache,
            config_manager=self.config_manager,
            redis=self.redis,
            timeouts=config.timeouts,
        )
        self.worker = CreationWorker(
            queue, pipeline,
            concurrency=config.worker.concurrency,
            dequeue_timeout=config.worker.dequeue_timeout,
        )
        lifecycle = LifecycleManager(
            proxmox=self.proxmox,
            records=records,
            lock=RedisLock(self.redis, default_ttl=config.timeouts.lock_ttl),
            publisher=publisher,
            vmid_cache=vmid_cache,
            redis=self.redis,
            timeouts=config.timeouts,
            sessions=sessions,
            discovery=discovery,
        )
        creation = CreationService(records, queue, vmid_cache, publisher, self.config_manager, self.redis)

        socket_path = Path(config.agent.socket_path)
        if not socket_path.is_absolute():
            socket_path = state_dir / socket_path.name

        self.server = AgentServer(
            socket_path=socket_path,
            host=config.agent.host,
            port=config.agent.port,
            creation=creation,
            lifecycle=lifecycle,
            queue=queue,
            publisher=publisher,
            config_manager=self.config_manager,
            redis=self.redis,
            cipher=cipher,
        )

        logger.info(f"Agent initialized ({config.execution.mode} execution, {config.worker.concurrency} workers)")

    async def run(self):
        """Run the agent main loop."""
        await self.initialize()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            await self.redis.ping()
            await self.server.start()
            await self.worker.start()
            self._tasks.append(asyncio.create_task(self._config_watch_loop()))

            logger.info("Agent started, waiting for shutdown signal")
            await self.shutdown_event.wait()
        finally:
            await self._cleanup()

    async def _config_watch_loop(self):
        """Reload templates and settings when the config directory changes."""
        logger.info(f"Starting config watcher on {self.config_manager.config_dir}")
        try:
            async for changes in awatch(self.config_manager.config_dir, stop_event=self.shutdown_event):
                if not await self.config_manager.has_changed():
                    continue
                logger.info("Configuration changed, reloading")
                try:
                    await self.config_manager.load()
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}")
        except Exception as e:
            if not self.shutdown_event.is_set():
                logger.error(f"Config watch error: {e}", exc_info=True)

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def _cleanup(self):
        """Clean up resources."""
        logger.info("Cleaning up agent resources")

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.worker:
            await self.worker.stop()
        if self.server:
            await self.server.stop()
        if self.proxmox:
            await self.proxmox.close()
        if self.redis:
            await self.redis.aclose()

        logger.info("Agent cleanup completed")


async def run_agent():
    """Run the agent."""
    config_dir = os.environ.get("LXCFORGE_CONFIG_DIR")
    agent = ForgeAgent(config_dir=Path(config_dir) if config_dir else None)
    await agent.run()
