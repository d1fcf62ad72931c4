"""HTTP/REST/WebSocket server for agent communication."""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web

from lxcforge.agent.config import ConfigManager
from lxcforge.agent.creation import CreationService
from lxcforge.agent.discovery import decrypt_service_credentials, get_cached_services
from lxcforge.agent.lifecycle import LifecycleManager
from lxcforge.agent.progress import ProgressPublisher, fold_snapshot, progress_channel
from lxcforge.agent.queue import JobQueue
from lxcforge.exceptions import LockContentionError, LxcForgeError
from lxcforge.models.job import JobState, utcnow
from lxcforge.models.progress import ProgressEvent
from lxcforge.utils.crypto import CredentialCipher


logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 15.0


class AgentServer:
    """Agent HTTP/WebSocket server."""

    def __init__(
        self,
        socket_path: Path,
        host: Optional[str],
        port: int,
        creation: CreationService,
        lifecycle: LifecycleManager,
        queue: JobQueue,
        publisher: ProgressPublisher,
        config_manager: ConfigManager,
        redis,
        cipher: CredentialCipher,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        """Initialize server."""
        self.socket_path = Path(socket_path)
        self.host = host
        self.port = port
        self.creation = creation
        self.lifecycle = lifecycle
        self.queue = queue
        self.publisher = publisher
        self.config_manager = config_manager
        self.redis = redis
        self.cipher = cipher
        self.heartbeat_interval = heartbeat_interval
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""
        self.app.router.add_post('/api/v1/command', self._handle_command)
        self.app.router.add_get('/api/v1/stream/progress', self._handle_stream_progress)

    async def start(self):
        """Start the server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        site_unix = web.UnixSite(self.runner, str(self.socket_path))
        await site_unix.start()
        os.chmod(self.socket_path, 0o660)
        logger.info(f"Agent listening on unix:{self.socket_path}")

        if self.host:
            site_tcp = web.TCPSite(self.runner, self.host, self.port)
            await site_tcp.start()
            logger.info(f"Agent listening on tcp://{self.host}:{self.port}")

    async def stop(self):
        """Stop the server."""
        if self.runner:
            await self.runner.cleanup()
        if self.socket_path.exists():
            self.socket_path.unlink()
        logger.info("Agent server stopped")

    async def _handle_command(self, request: web.Request) -> web.Response:
        """Handle standard REST command."""
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)

        command = data.get("command")
        args = data.get("args") or {}
        try:
            response_data = await self._process_command(command, args)
            return web.json_response({"success": True, "data": response_data}, dumps=_dumps)
        except LockContentionError as e:
            return web.json_response({"success": False, "error": str(e)}, status=409)
        except LxcForgeError as e:
            logger.info(f"Command {command} rejected: {e}")
            return web.json_response({"success": False, "error": str(e)}, status=400)
        except Exception as e:
            logger.error(f"Command error: {e}", exc_info=True)
            return web.json_response({"success": False, "error": str(e)}, status=500)

    async def _process_command(self, command: str, args: Dict[str, Any]) -> Any:
        """Process the command logic."""
        handlers = {
            "create": self._handle_create,
            "start": self._lifecycle_handler(self.lifecycle.start),
            "stop": self._lifecycle_handler(self.lifecycle.stop),
            "shutdown": self._lifecycle_handler(self.lifecycle.shutdown),
            "restart": self._lifecycle_handler(self.lifecycle.restart),
            "delete": self._lifecycle_handler(self.lifecycle.delete),
            "rediscover": self._lifecycle_handler(self.lifecycle.rediscover),
            "status": self._handle_status,
            "services": self._handle_services,
            "job": self._handle_job,
            "queue": self._handle_queue,
            "templates": self._handle_templates,
            "reload": self._handle_reload,
        }

        handler = handlers.get(command)
        if not handler:
            raise LxcForgeError(f"Unknown command: {command}")

        return await handler(args)

    @staticmethod
    def _container_id(args: Dict[str, Any]) -> str:
        container_id = args.get("id")
        if not container_id:
            raise LxcForgeError("Container id required")
        return container_id

    def _lifecycle_handler(self, action):
        async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
            return await action(self._container_id(args))
        return handler

    async def _handle_create(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.creation.submit(args)

    async def _handle_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if args.get("id"):
            return await self.lifecycle.get_status(args["id"])
        return {
            "agent": {"running": True},
            "queue": await self.queue.counts(),
            "containers": await self.lifecycle.list_containers(),
        }

    async def _handle_services(self, args: Dict[str, Any]) -> Dict[str, Any]:
        container_id = self._container_id(args)
        cache = await get_cached_services(self.redis, container_id)
        if cache is None:
            return {"container_id": container_id, "services": [], "container_ip": None, "discovered_at": None}

        if args.get("reveal"):
            data = decrypt_service_credentials(cache, self.cipher)
        else:
            data = cache.model_dump(mode="json")
            for service in data["services"]:
                service["credentials"] = bool(service["credentials"])
        data["container_id"] = container_id
        return data

    async def _handle_job(self, args: Dict[str, Any]) -> Dict[str, Any]:
        job_id = args.get("job_id")
        if not job_id:
            raise LxcForgeError("Job id required")
        job = await self.queue.get_job(str(job_id))
        if job is None:
            raise LxcForgeError(f"Job {job_id} not found")
        return job.model_dump(mode="json", exclude={"data": {"config": {"root_password"}}})

    async def _handle_queue(self, args: Dict[str, Any]) -> Dict[str, Any]:
        limit = int(args.get("limit", 10))
        recent = {}
        for state in JobState:
            recent[state.value] = [
                {"id": j.id, "name": j.name, "container_id": j.data.container_id, "error": j.error}
                for j in await self.queue.list_jobs(state, limit)
            ]
        return {"name": self.queue.name, "counts": await self.queue.counts(), "jobs": recent}

    async def _handle_templates(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"templates": self.config_manager.list_templates()}

    async def _handle_reload(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.config_manager.load()
        return {"reloaded": True, "templates": len(self.config_manager.templates)}

    async def _handle_stream_progress(self, request: web.Request) -> web.StreamResponse:
        """Stream a container's progress: snapshot, then live events, then done."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        container_id = request.query.get("id")
        if not container_id:
            await ws.close()
            return ws

        # Subscribe before reading the buffer so nothing falls in between
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(progress_channel(container_id))
        try:
            events = await self.publisher.get_events(container_id)
            snapshot = fold_snapshot(events)
            await ws.send_json({
                "event": "snapshot",
                "data": {
                    **snapshot.model_dump(mode="json"),
                    "events": [e.model_dump(mode="json", exclude_none=True) for e in events],
                },
            })
            if snapshot.is_terminal:
                await self._send_done(ws, snapshot.is_complete, snapshot.error_message)
                return ws

            # Skip live copies of events already in the snapshot
            await self._forward_live(ws, pubsub, after=events[-1].timestamp if events else None)
        except (ConnectionResetError, asyncio.CancelledError):
            logger.debug(f"Progress stream for {container_id} closed by client")
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            await ws.close()
        return ws

    async def _forward_live(self, ws: web.WebSocketResponse, pubsub, after: Optional[datetime] = None):
        loop = asyncio.get_running_loop()
        last_beat = loop.time()
        while not ws.closed:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None:
                if loop.time() - last_beat >= self.heartbeat_interval:
                    await ws.send_json({"event": "heartbeat", "data": {"timestamp": utcnow().isoformat()}})
                    last_beat = loop.time()
                continue

            try:
                event = ProgressEvent.model_validate_json(message["data"])
            except ValueError as e:
                logger.debug(f"Dropping malformed progress message: {e}")
                continue

            if after is not None and event.timestamp <= after:
                continue

            await ws.send_json({"event": "progress", "data": event.model_dump(mode="json", exclude_none=True)})
            if event.is_terminal:
                await self._send_done(ws, event.type == "complete", event.message if event.type == "error" else None)
                return

    @staticmethod
    async def _send_done(ws: web.WebSocketResponse, success: bool, error: Optional[str]):
        await ws.send_json({"event": "done", "data": {"success": success, "error": error}})


def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)
