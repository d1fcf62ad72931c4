"""Command implementations for CLI."""

import asyncio
import json
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from lxcforge.cli.client import AgentClient, AgentError


console = Console()
stderr_console = Console(stderr=True)

LIFECYCLE_LABELS = {
    "start": ("Starting", "started"),
    "stop": ("Stopping", "stopped"),
    "shutdown": ("Shutting down", "shut down"),
    "restart": ("Restarting", "restarted"),
    "delete": ("Deleting", "deleted"),
    "rediscover": ("Discovering services on", "rediscovered"),
}


def _run_action(
    client: AgentClient,
    description: str,
    command: str,
    args: Dict[str, Any],
    success_msg: Optional[str] = None,
    quiet: bool = False
) -> Dict[str, Any]:
    """Helper to run an agent command with a progress spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task(description, total=None)
        response = client.request(command, args)
        progress.update(task, completed=True)

    if success_msg and not quiet:
        console.print(success_msg)
    return response


def create_container(client: AgentClient, request: Dict[str, Any], follow: bool = True) -> bool:
    """Submit a creation request, optionally following its progress."""
    response = _run_action(
        client,
        description=f"Submitting container {request['config']['hostname']}...",
        command="create",
        args=request,
    )
    container_id = response["container_id"]
    console.print(
        f"[green]✓[/green] Queued container [cyan]{container_id}[/cyan] "
        f"(vmid {response['vmid']}, job {response['job_id']})"
    )
    if not follow:
        return True
    return follow_progress(client, container_id)


def lifecycle_action(client: AgentClient, action: str, container_id: str) -> Dict[str, Any]:
    """Run start/stop/shutdown/restart/delete/rediscover."""
    doing, done = LIFECYCLE_LABELS[action]
    try:
        response = _run_action(
            client,
            description=f"{doing} container {container_id}...",
            command=action,
            args={"id": container_id},
        )
    except AgentError as e:
        if e.is_contention:
            raise AgentError("Another operation is in progress for this container, try again shortly", e.status)
        raise

    extra = ""
    if response.get("method"):
        extra = f" ({response['method']})"
    elif response.get("already_absent"):
        extra = " (was already absent on the hypervisor)"
    console.print(f"[green]✓[/green] Container {container_id} {done}{extra}")
    return response


def _render_event(progress: Progress, task, event: Dict[str, Any]):
    kind = event.get("type")
    message = event.get("message", "")
    if kind == "log":
        progress.console.print(f"[dim]{message}[/dim]", highlight=False)
    elif kind in ("step", "complete"):
        progress.update(
            task,
            completed=event.get("percent") or 0,
            description=f"{event.get('step') or kind}: {message}",
        )
    elif kind == "error":
        progress.console.print(f"[red]✗ {message}[/red]")


def follow_progress(client: AgentClient, container_id: str) -> bool:
    """Stream progress until the pipeline finishes. Returns whether it succeeded."""

    async def _run() -> Dict[str, Any]:
        async with client.stream_connect("/api/v1/stream/progress", {"id": container_id}) as ws:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Waiting for worker...", total=100)
                async for raw in ws:
                    message = json.loads(raw)
                    event, data = message.get("event"), message.get("data") or {}
                    if event == "snapshot":
                        for past in data.get("events", []):
                            _render_event(progress, task, past)
                        progress.update(task, completed=data.get("percent", 0))
                    elif event == "progress":
                        _render_event(progress, task, data)
                    elif event == "done":
                        return data
        return {"success": False, "error": "Progress stream closed unexpectedly"}

    result = asyncio.run(_run())
    if result.get("success"):
        console.print(f"[green]✓[/green] Container {container_id} is ready")
        return True
    stderr_console.print(f"[red]✗[/red] Container {container_id} failed: {result.get('error')}")
    return False


def show_status(client: AgentClient, container_id: Optional[str] = None):
    """Show agent or container status."""
    response = client.request("status", {"id": container_id} if container_id else {})

    if container_id:
        console.print(f"[bold]Container: {container_id}[/bold]")
        console.print(f"  Hostname: {response.get('hostname')}")
        console.print(f"  VMID: {response.get('vmid')} on {response.get('node')}")
        console.print(f"  Lifecycle: {response.get('lifecycle')}")
        console.print(f"  Status: {response.get('status')} (from {response.get('source')})")
        console.print(f"  IP: {response.get('container_ip') or '-'}")
        console.print(f"  Services: {response.get('services', 0)}")
        return

    queue = response.get("queue", {})
    console.print("[bold]Agent Status[/bold]")
    console.print(f"  Running: {'Yes' if response.get('agent', {}).get('running') else 'No'}")
    console.print(
        f"  Queue: {queue.get('waiting', 0)} waiting, {queue.get('active', 0)} active, "
        f"{queue.get('completed', 0)} completed, {queue.get('failed', 0)} failed"
    )
    console.print()

    containers = response.get("containers", [])
    table = Table(title="Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Hostname")
    table.add_column("VMID", justify="right")
    table.add_column("Node", style="magenta")
    table.add_column("Lifecycle")
    colors = {"ready": "green", "creating": "yellow", "error": "red"}
    for info in containers:
        color = colors.get(info["lifecycle"], "white")
        table.add_row(
            info["container_id"],
            info.get("hostname") or "-",
            str(info["vmid"]),
            info.get("node") or "-",
            f"[{color}]{info['lifecycle']}[/{color}]",
        )
    console.print(table)


def show_services(client: AgentClient, container_id: str, reveal: bool = False):
    """Show discovered services."""
    response = client.request("services", {"id": container_id, "reveal": reveal})
    services = response.get("services", [])
    if not services:
        console.print(f"No services discovered for {container_id}")
        return

    table = Table(title=f"Services on {response.get('container_ip') or container_id}")
    table.add_column("Name", style="cyan")
    table.add_column("Port", justify="right")
    table.add_column("Status")
    table.add_column("System")
    table.add_column("Credentials")
    for svc in sorted(services, key=lambda s: (s["is_system"], s["name"])):
        creds = svc.get("credentials")
        if isinstance(creds, dict):
            creds_text = ", ".join(f"{k}={v}" for k, v in creds.items())
        else:
            creds_text = "✓" if creds else ""
        table.add_row(
            svc["name"],
            str(svc["port"]) if svc.get("port") else "-",
            svc["status"],
            "yes" if svc["is_system"] else "",
            creds_text,
        )
    console.print(table)
    if response.get("discovered_at"):
        console.print(f"[dim]Discovered at {response['discovered_at']}[/dim]")


def show_job(client: AgentClient, job_id: str):
    """Show a queued job."""
    job = client.request("job", {"job_id": job_id})
    console.print(f"[bold]Job {job['id']}[/bold] ({job['name']})")
    console.print(f"  State: {job['state']}")
    console.print(f"  Container: {job['data']['container_id']}")
    console.print(f"  Enqueued: {job['enqueued_at']}")
    if job.get("finished_at"):
        console.print(f"  Finished: {job['finished_at']}")
    if job.get("error"):
        console.print(f"  [red]Error: {job['error']}[/red]")


def show_queue(client: AgentClient, limit: int = 10):
    """Show queue counts and recent jobs."""
    response = client.request("queue", {"limit": limit})
    counts = response.get("counts", {})
    table = Table(title=f"Queue {response.get('name')}")
    table.add_column("State", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Recent")
    for state, count in counts.items():
        recent = ", ".join(f"{j['id']}:{j['container_id'][:8]}" for j in response.get("jobs", {}).get(state, []))
        table.add_row(state, str(count), recent)
    console.print(table)


def list_templates(client: AgentClient):
    """List provisioning templates."""
    response = client.request("templates", {})
    table = Table(title="Templates")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Scripts")
    table.add_column("Files", justify="right")
    table.add_column("Packages", justify="right")
    for tpl in response.get("templates", []):
        table.add_row(tpl["id"], tpl["name"], ", ".join(tpl["scripts"]), str(tpl["files"]), str(tpl["packages"]))
    console.print(table)


def agent_reload(client: AgentClient):
    """Reload agent configuration."""
    response = _run_action(client, description="Reloading configuration...", command="reload", args={})
    console.print(f"[green]✓[/green] Configuration reloaded ({response.get('templates', 0)} templates)")
