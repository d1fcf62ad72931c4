"""Five-phase container creation pipeline."""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING

from lxcforge.agent.discovery import CREDENTIALS_DIR, ServiceDiscovery
from lxcforge.agent.helpers import SCRIPT_HELPERS, SCRIPT_HELPERS_PATH
from lxcforge.agent.progress import ProgressPublisher
from lxcforge.exceptions import PipelineError, ScriptFailedError
from lxcforge.models.config import TimeoutsConfig
from lxcforge.models.container import ContainerLifecycle
from lxcforge.models.job import ContainerJob, JobResult, ScriptSelection
from lxcforge.models.progress import StepName
from lxcforge.models.template import TemplateScript, TemplateSpec
from lxcforge.proxmox.client import ProxmoxClient
from lxcforge.proxmox.utils import extract_ip_from_net0, is_ipv4, static_ip_from_config
from lxcforge.remote.base import RemoteSession
from lxcforge.remote.registry import SessionFactory
from lxcforge.store.records import RecordStore
from lxcforge.store.vmid_cache import VmidCache
from lxcforge.utils.templates import render_template

if TYPE_CHECKING:
    from lxcforge.agent.config import ConfigManager

logger = logging.getLogger(__name__)

FILESYSTEM_CHECK = "test -d /etc/systemd/system && echo ready || echo not-ready"


@dataclass
class PipelineRun:
    """Mutable state of one pipeline execution."""
    job: ContainerJob
    template: Optional[TemplateSpec] = None
    session: Optional[RemoteSession] = None
    container_ip: Optional[str] = None

    @property
    def container_id(self) -> str:
        return self.job.container_id

    @property
    def vmid(self) -> int:
        return self.job.config.vmid


def select_scripts(template: Optional[TemplateSpec], selections: Optional[List[ScriptSelection]]) -> List[TemplateScript]:
    """Scripts to run, in order. A per-job selection overrides the template default."""
    if not template:
        return []

    selected = []
    for script in template.ordered_scripts():
        enabled = script.enabled
        for selection in selections or []:
            if (selection.id and selection.id == script.id) or (
                not selection.id and selection.name and selection.name == script.name
            ):
                enabled = selection.enabled
                break
        if enabled:
            selected.append(script)
    return selected


def script_percent(index: int, total: int) -> int:
    """Percent after finishing script `index` (0-based), spread over 65-90."""
    return int(65 + (index + 1) * 25 / total + 0.5)


async def resolve_container_ip(
    ip_config: str,
    session: RemoteSession,
    proxmox: ProxmoxClient,
    node: str,
    vmid: int,
) -> Optional[str]:
    """Container address: static config, then in-container queries, then the hypervisor net0."""
    static_ip = static_ip_from_config(ip_config)
    if static_ip:
        return static_ip

    try:
        result = await session.exec("hostname -I 2>/dev/null")
        first = result.stdout.strip().split()[0] if result.stdout.strip() else ""
        if is_ipv4(first):
            return first
    except Exception as e:
        logger.debug(f"hostname -I failed for {vmid}: {e}")

    try:
        result = await session.exec(
            "ip -4 -o addr show scope global 2>/dev/null | awk '{print $4}' | head -1"
        )
        candidate = result.stdout.strip().split("/")[0]
        if is_ipv4(candidate):
            return candidate
    except Exception as e:
        logger.debug(f"ip addr query failed for {vmid}: {e}")

    try:
        config = await proxmox.get_container_config(node, vmid)
        return extract_ip_from_net0(config.get("net0"))
    except Exception as e:
        logger.debug(f"Could not read net0 for {vmid}: {e}")
    return None


class CreationPipeline:
    """Creates, starts, provisions and inventories one container per job."""

    def __init__(
        self,
        proxmox: ProxmoxClient,
        sessions: SessionFactory,
        publisher: ProgressPublisher,
        records: RecordStore,
        discovery: ServiceDiscovery,
        vmid_cache: VmidCache,
        config_manager: "ConfigManager",
        redis,
        timeouts: Optional[TimeoutsConfig] = None,
    ):
        """Initialize creation pipeline."""
        self.proxmox = proxmox
        self.sessions = sessions
        self.publisher = publisher
        self.records = records
        self.discovery = discovery
        self.vmid_cache = vmid_cache
        self.config_manager = config_manager
        self.redis = redis
        self.timeouts = timeouts or TimeoutsConfig()

    async def run(self, job: ContainerJob) -> JobResult:
        """Execute all phases. Never raises; failures are reported in the result."""
        run = PipelineRun(job=job)
        logger.info(f"Creating container {job.container_id} (vmid {run.vmid}) on {job.node_name}")
        try:
            await self._create(run)
            await self._start(run)
            await self._deploy(run)
            await self._sync(run)
            await self._finalize(run)
            logger.info(f"Container {job.container_id} ready")
            return JobResult(success=True, container_id=job.container_id, vmid=run.vmid)

        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(f"Container creation failed for {job.container_id}: {message}")
            await self._mark_failed(run, message)
            return JobResult(success=False, container_id=job.container_id, vmid=run.vmid, error=message)

        finally:
            if run.session:
                try:
                    await run.session.close()
                except Exception as e:
                    logger.debug(f"Error closing session for {job.container_id}: {e}")

    async def _mark_failed(self, run: PipelineRun, message: str):
        try:
            await self.records.set_lifecycle(run.container_id, ContainerLifecycle.ERROR)
        except Exception as e:
            logger.error(f"Failed to set lifecycle error for {run.container_id}: {e}")
        try:
            await self.publisher.error(run.container_id, message)
        except Exception as e:
            logger.error(f"Failed to publish error event for {run.container_id}: {e}")

    async def _step(self, run: PipelineRun, step: StepName, percent: int, message: str, **extra):
        await self.publisher.step(run.container_id, step, percent, message, **extra)

    async def _log(self, run: PipelineRun, message: str, step: Optional[StepName] = None, **extra):
        await self.publisher.log(run.container_id, message, step=step, **extra)

    def _line_logger(self, run: PipelineRun, step: StepName, **extra):
        async def on_line(line: str, is_stderr: bool):
            await self.publisher.log(run.container_id, line, step=step, **extra)
        return on_line

    async def _create(self, run: PipelineRun):
        job = run.job
        await self._step(run, StepName.CREATING, 5, "Creating LXC container...")
        upid = await self.proxmox.create_container(job.node_name, job.config)
        await self.proxmox.wait_for_task(
            job.node_name, upid,
            timeout=self.timeouts.task_timeout_long,
            interval=self.timeouts.task_poll_interval,
        )
        await self._step(run, StepName.CREATING, 20, "Container created successfully")

    async def _start(self, run: PipelineRun):
        job = run.job
        await self._step(run, StepName.STARTING, 25, "Starting container...")
        upid = await self.proxmox.start_container(job.node_name, run.vmid)
        await self.proxmox.wait_for_task(
            job.node_name, upid,
            timeout=self.timeouts.task_timeout,
            interval=self.timeouts.task_poll_interval,
        )
        await self._step(run, StepName.STARTING, 35, "Container started")

    async def _open_session(self, run: PipelineRun) -> RemoteSession:
        job = run.job
        if self.sessions.is_relayed:
            return await self.sessions.open(run.vmid)

        # Direct mode needs an address before any in-container query is possible
        run.container_ip = static_ip_from_config(job.config.ip_config)
        if not run.container_ip:
            config = await self.proxmox.get_container_config(job.node_name, run.vmid)
            run.container_ip = extract_ip_from_net0(config.get("net0"))
        return await self.sessions.open(run.vmid, host=run.container_ip, password=job.config.root_password)

    async def _wait_for_filesystem(self, run: PipelineRun):
        attempts = self.timeouts.filesystem_ready_attempts
        for attempt in range(1, attempts + 1):
            check = await run.session.exec(FILESYSTEM_CHECK)
            if check.stdout.strip() == "ready":
                return
            if attempt == attempts:
                raise PipelineError(
                    f"Container filesystem not ready after {attempts} attempts: /etc/systemd/system not found"
                )
            await asyncio.sleep(self.timeouts.filesystem_check_delay)

    async def _deploy(self, run: PipelineRun):
        job = run.job
        await self._step(run, StepName.DEPLOYING, 40, "Connecting to container...")

        run.session = await self._open_session(run)
        mode = "pct exec" if self.sessions.is_relayed else "direct SSH"
        await self._log(run, f"Connected using {mode} for CT {run.vmid}", step=StepName.DEPLOYING)

        await self._log(run, "Waiting for container filesystem to be ready...", step=StepName.DEPLOYING)
        await self._wait_for_filesystem(run)
        await self._log(run, "Container filesystem ready", step=StepName.DEPLOYING)

        if not run.container_ip:
            run.container_ip = await resolve_container_ip(
                job.config.ip_config, run.session, self.proxmox, job.node_name, run.vmid
            )
        if run.container_ip:
            await self._log(run, f"Container IP: {run.container_ip}", step=StepName.DEPLOYING)
        else:
            await self._log(
                run, "Warning: could not determine container IP, service URLs will be unavailable",
                step=StepName.DEPLOYING,
            )

        await run.session.exec(f"mkdir -p {CREDENTIALS_DIR}")

        run.template = self.config_manager.get_template(job.template_id)
        if job.template_id and not run.template:
            raise PipelineError(f"Template not found: {job.template_id}")

        if run.template:
            context = {
                "config": job.config.model_dump(exclude={"root_password"}),
                "hostname": job.config.hostname,
                "vmid": run.vmid,
                "container_ip": run.container_ip,
            }
            for file in run.template.files:
                target_dir = file.target_path.rstrip("/") or "/"
                target = f"{target_dir.rstrip('/')}/{file.name}"
                await run.session.exec(f"mkdir -p {shlex.quote(target_dir)}")
                content = render_template(file.content, **context) if file.render else file.content
                await run.session.upload_file(content, target, 0o644)
                await self._log(run, f"Deployed file: {target}", step=StepName.DEPLOYING)

        await self._step(run, StepName.DEPLOYING, 60, "Template files deployed")

    def _packages(self, run: PipelineRun, manager: str) -> List[str]:
        job = run.job
        packages = []
        if run.template and manager in job.enabled_buckets:
            packages = [p.name for p in run.template.packages if p.manager == manager]
        if manager == "apt" and job.additional_packages:
            packages.extend(p.strip() for p in job.additional_packages.splitlines() if p.strip())
        return packages

    async def _install_packages(self, run: PipelineRun):
        job = run.job
        if not job.enabled_buckets and not job.additional_packages:
            return
        await self._log(run, "Installing user-selected packages...", step=StepName.SYNCING)

        apt_packages = self._packages(run, "apt")
        if apt_packages:
            command = (
                "DEBIAN_FRONTEND=noninteractive apt-get update -qq && "
                f"apt-get install -y -qq {' '.join(shlex.quote(p) for p in apt_packages)}"
            )
            exit_code = await run.session.exec_streaming(command, self._line_logger(run, StepName.SYNCING))
            if exit_code != 0:
                logger.warning(f"apt install exited with {exit_code} for {run.container_id}")
                await self._log(
                    run, f"Package installation exited with code {exit_code} (non-fatal)", step=StepName.SYNCING
                )

        pip_packages = self._packages(run, "pip")
        if pip_packages:
            command = f"pip install --quiet {' '.join(shlex.quote(p) for p in pip_packages)}"
            exit_code = await run.session.exec_streaming(command, self._line_logger(run, StepName.SYNCING))
            if exit_code != 0:
                logger.warning(f"pip install exited with {exit_code} for {run.container_id}")
                await self._log(
                    run, f"pip install exited with code {exit_code} (non-fatal)", step=StepName.SYNCING
                )

    async def _sync(self, run: PipelineRun):
        scripts = select_scripts(run.template, run.job.scripts)
        names = [s.name for s in scripts]
        await self._step(
            run, StepName.SYNCING, 65, "Running setup...",
            script_names=names or None, script_total=len(names) or None,
        )

        await self._install_packages(run)

        if scripts:
            total = len(scripts)
            await run.session.upload_file(SCRIPT_HELPERS, SCRIPT_HELPERS_PATH, 0o644)
            for index, script in enumerate(scripts):
                await self._run_script(run, script, index, total)
            await run.session.exec(f"rm -f {SCRIPT_HELPERS_PATH}")

        await self._step(run, StepName.SYNCING, 90, "Setup scripts completed")

    async def _run_script(self, run: PipelineRun, script: TemplateScript, index: int, total: int):
        extra = {"script_name": script.name, "script_index": index, "script_total": total}
        await self._log(run, f"Running script: {script.name} ({index + 1}/{total})", step=StepName.SYNCING, **extra)

        script_path = f"/tmp/{script.name}"
        await run.session.upload_file(script.content, script_path, 0o644)

        # Sourced into one shell so helper functions and exports are visible
        command = f"bash -c \"source {SCRIPT_HELPERS_PATH}; source '{script_path}'\""
        exit_code = await run.session.exec_streaming(command, self._line_logger(run, StepName.SYNCING, **extra))
        if exit_code != 0:
            raise ScriptFailedError(script.name, exit_code)

        await run.session.exec(f"rm -f {shlex.quote(script_path)}")
        await self._step(
            run, StepName.SYNCING, script_percent(index, total), f'Script "{script.name}" completed',
            script_name=script.name,
        )

    async def _finalize(self, run: PipelineRun):
        job = run.job
        await self._step(run, StepName.FINALIZING, 92, "Discovering services...")

        cache = await self.discovery.discover_and_cache(self.redis, run.container_id, run.session, run.container_ip)
        for service in cache.services:
            port = f" (port {service.port})" if service.port else ""
            creds = " [credentials]" if service.credentials else ""
            await self._log(run, f"Discovered service: {service.name}{port}{creds}", step=StepName.FINALIZING)

        await self._step(run, StepName.FINALIZING, 98, "Finalizing container...")
        await self.records.set_lifecycle(run.container_id, ContainerLifecycle.READY)

        try:
            await self.vmid_cache.invalidate(job.node_id)
        except Exception as e:
            logger.warning(f"Failed to invalidate VMID cache for {job.node_id}: {e}")

        session, run.session = run.session, None
        await session.close()

        await self.publisher.complete(run.container_id, "Container ready!")
