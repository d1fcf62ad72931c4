"""Main CLI implementation using Typer."""

from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from rich.console import Console
from ruamel.yaml import YAML

from lxcforge.cli.commands import (
    agent_reload,
    create_container,
    follow_progress,
    lifecycle_action,
    list_templates,
    show_job,
    show_queue,
    show_services,
    show_status,
)
from lxcforge.cli.client import AgentClient, AgentError


app = typer.Typer(
    name="forgectl",
    help="lxcforge - LXC container provisioning on Proxmox VE",
    add_completion=False,
)

console = Console()

SOCKET_OPTION = typer.Option(None, "--socket", "-s", help="Agent socket path")
HOST_OPTION = typer.Option(None, "--host", help="Agent TCP address (host:port)")


def _run_cli_command(handler: Callable[..., Any], socket: Optional[str], host: Optional[str] = None, **kwargs: Any):
    """Helper to run a CLI command with an agent client and error handling."""
    try:
        client = AgentClient(socket_path=socket, host=host)
        result = handler(client, **kwargs)
    except AgentError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    if result is False:
        raise typer.Exit(1)
    return result


def _split_packages(packages: List[str]) -> Optional[str]:
    names = [p.strip() for item in packages for p in item.split(",") if p.strip()]
    return "\n".join(names) if names else None


@app.command("create")
def create_command(
    hostname: Optional[str] = typer.Argument(None, help="Container hostname"),
    vmid: Optional[int] = typer.Option(None, "--vmid", help="Proxmox VMID"),
    node: str = typer.Option("pve", "--node", "-n", help="Proxmox node name"),
    node_id: Optional[str] = typer.Option(None, "--node-id", help="Node identifier, defaults to the node name"),
    ostemplate: Optional[str] = typer.Option(None, "--ostemplate", help="e.g. local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst"),
    template: Optional[str] = typer.Option(None, "--template", "-t", help="Provisioning template id"),
    memory: int = typer.Option(512, "--memory", help="Memory in MiB"),
    swap: int = typer.Option(512, "--swap", help="Swap in MiB"),
    cores: int = typer.Option(1, "--cores", help="CPU cores"),
    disk: int = typer.Option(8, "--disk", help="Root disk size in GiB"),
    storage: str = typer.Option("local-lvm", "--storage", help="Storage for the root disk"),
    bridge: str = typer.Option("vmbr0", "--bridge", help="Network bridge"),
    ip: str = typer.Option("dhcp", "--ip", help="'dhcp' or '10.0.0.5/24,gw=10.0.0.1'"),
    nameserver: Optional[str] = typer.Option(None, "--nameserver"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key", help="Public key file to install for root"),
    nesting: bool = typer.Option(False, "--nesting", help="Enable nesting (Docker inside the container)"),
    privileged: bool = typer.Option(False, "--privileged", help="Create a privileged container"),
    bucket: List[str] = typer.Option([], "--bucket", "-b", help="Template package bucket to install (apt, pip)"),
    package: List[str] = typer.Option([], "--package", "-p", help="Extra apt package(s), comma separated"),
    from_file: Optional[Path] = typer.Option(None, "--from-file", "-f", help="YAML or JSON creation request"),
    follow: bool = typer.Option(True, "--follow/--no-follow", help="Stream progress until done"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Create a container and provision it."""
    if from_file:
        request = YAML(typ="safe").load(from_file.read_text())
    else:
        if not hostname or vmid is None or not ostemplate:
            console.print("[red]Error:[/red] hostname, --vmid and --ostemplate are required without --from-file")
            raise typer.Exit(1)
        password = typer.prompt("Root password", hide_input=True, confirmation_prompt=True)
        request = {
            "node_id": node_id or node,
            "node_name": node,
            "template_id": template,
            "config": {
                "hostname": hostname,
                "vmid": vmid,
                "memory": memory,
                "swap": swap,
                "cores": cores,
                "disk_size": disk,
                "storage": storage,
                "bridge": bridge,
                "ip_config": ip,
                "nameserver": nameserver,
                "root_password": password,
                "ssh_public_key": ssh_key.read_text().strip() if ssh_key else None,
                "unprivileged": not privileged,
                "nesting": nesting,
                "ostemplate": ostemplate,
            },
            "enabled_buckets": bucket,
            "additional_packages": _split_packages(package),
        }
    _run_cli_command(create_container, socket=socket, host=host, request=request, follow=follow)


def _lifecycle_command(action: str, help_text: str):
    def command(
        container_id: str = typer.Argument(..., help="Container id"),
        socket: Optional[str] = SOCKET_OPTION,
        host: Optional[str] = HOST_OPTION,
    ):
        _run_cli_command(lifecycle_action, socket=socket, host=host, action=action, container_id=container_id)
    command.__doc__ = help_text
    app.command(action)(command)


_lifecycle_command("start", "Start a stopped container.")
_lifecycle_command("stop", "Force-stop a running container.")
_lifecycle_command("shutdown", "Shut a container down, forcing it if it does not stop in time.")
_lifecycle_command("restart", "Shut down and start a container.")
_lifecycle_command("rediscover", "Refresh the discovered services of a running container.")


@app.command("delete")
def delete_command(
    container_id: str = typer.Argument(..., help="Container id"),
    force: bool = typer.Option(False, "--force", "-f", help="Delete without confirmation"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Delete a container and everything recorded about it."""
    if not force:
        confirm = typer.confirm(f"Delete container {container_id}?")
        if not confirm:
            raise typer.Abort()
    _run_cli_command(lifecycle_action, socket=socket, host=host, action="delete", container_id=container_id)


@app.command("status")
def status_command(
    container_id: Optional[str] = typer.Argument(None, help="Show status for a specific container"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Show agent or container status."""
    _run_cli_command(show_status, socket=socket, host=host, container_id=container_id)


@app.command("services")
def services_command(
    container_id: str = typer.Argument(..., help="Container id"),
    reveal: bool = typer.Option(False, "--reveal", help="Show decrypted credentials"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Show discovered services."""
    _run_cli_command(show_services, socket=socket, host=host, container_id=container_id, reveal=reveal)


@app.command("progress")
def progress_command(
    container_id: str = typer.Argument(..., help="Container id"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Follow the creation progress of a container."""
    _run_cli_command(follow_progress, socket=socket, host=host, container_id=container_id)


@app.command("job")
def job_command(
    job_id: str = typer.Argument(..., help="Job id"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Show a creation job."""
    _run_cli_command(show_job, socket=socket, host=host, job_id=job_id)


@app.command("queue")
def queue_command(
    limit: int = typer.Option(10, "--limit", "-l", help="Recent jobs per state"),
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Show the creation queue."""
    _run_cli_command(show_queue, socket=socket, host=host, limit=limit)


@app.command("templates")
def templates_command(
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """List provisioning templates."""
    _run_cli_command(list_templates, socket=socket, host=host)


agent_app = typer.Typer(help="Agent management commands")
app.add_typer(agent_app, name="agent")


@agent_app.command("status")
def agent_status_command(
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Show agent status."""
    _run_cli_command(show_status, socket=socket, host=host)


@agent_app.command("reload")
def agent_reload_command(
    socket: Optional[str] = SOCKET_OPTION,
    host: Optional[str] = HOST_OPTION,
):
    """Reload agent configuration."""
    _run_cli_command(agent_reload, socket=socket, host=host)


def main():
    """Main entry point for CLI."""
    app()
