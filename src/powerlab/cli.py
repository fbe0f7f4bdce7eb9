#!/usr/bin/env python3
"""
PowerLab CLI - repeatable Windows lab provisioning on Proxmox.

    powerlab switch                     # Ensure the lab switch
    powerlab vm SQLSRV                  # Ensure a VM
    powerlab sql SQLSRV --join-domain   # VM + Windows + SQL Server + domain join
    powerlab bootstrap objects.xlsx     # OUs, groups and users from a spreadsheet

Settings come from POWERLAB_* environment variables (.env honoured) and an
optional YAML lab file passed with --config.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from powerlab.config import LabConfig
from powerlab.disk_manager import DiskSpec
from powerlab.errors import PowerLabError
from powerlab.vm_manager import VMSpec
from powerlab.workflow import PowerLab

# Initialize CLI app and console
app = typer.Typer(
    name="powerlab",
    help="Windows lab provisioning on Proxmox",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Failures reported as a message and exit code 1 instead of a traceback
COMMAND_ERRORS = (PowerLabError, OSError)

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML lab file overriding environment settings")


def load_config(config_file: Optional[Path]) -> LabConfig:
    """Load and validate the lab configuration."""
    try:
        config = LabConfig.from_file(config_file) if config_file else LabConfig.from_environment()
        config.validate()
        return config
    except COMMAND_ERRORS as e:
        console.print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(1)


def get_lab(config_file: Optional[Path]) -> PowerLab:
    """Get a PowerLab bound to the configured Proxmox node."""
    return PowerLab(load_config(config_file))


def fail(action: str, error: Exception) -> None:
    console.print(f"❌ {action} failed: {error}")
    logger.debug("%s error", action, exc_info=True)
    raise typer.Exit(1)


# === CONFIGURATION COMMANDS ===

config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@config_app.command("show")
def show_config(config_file: Optional[Path] = CONFIG_OPTION) -> None:
    """Show the effective configuration with secrets masked."""
    try:
        config = LabConfig.from_file(config_file) if config_file else LabConfig.from_environment()
    except COMMAND_ERRORS as e:
        fail("Loading configuration", e)
        return

    table = Table(title="PowerLab Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@config_app.command("validate")
def validate_config(config_file: Optional[Path] = CONFIG_OPTION) -> None:
    """Validate the configuration."""
    console.print("🔍 Validating configuration...")
    load_config(config_file)
    console.print("✅ Configuration is valid")


# === RESOURCE COMMANDS ===


@app.command("switch")
def ensure_switch(
    name: Optional[str] = typer.Argument(None, help="Bridge name, defaults to the configured lab switch"),
    switch_type: Optional[str] = typer.Option(None, "--type", help="external or internal"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Ensure a virtual switch exists."""
    lab = get_lab(config_file)
    try:
        bridge = lab.switches.ensure_switch(name, switch_type)
    except COMMAND_ERRORS as e:
        fail("Switch creation", e)
        return
    console.print(f"✅ Switch {bridge} ready")


@app.command("vm")
def ensure_vm(
    name: str = typer.Argument(..., help="VM name"),
    memory_mb: Optional[int] = typer.Option(None, "--memory", help="Memory in MB"),
    generation: Optional[int] = typer.Option(None, "--generation", help="1 (BIOS) or 2 (UEFI)"),
    switch: Optional[str] = typer.Option(None, "--switch", help="Switch to connect to"),
    path: Optional[str] = typer.Option(None, "--path", help="Storage for VM volumes"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Ensure a VM exists."""
    lab = get_lab(config_file)
    spec = VMSpec(memory_mb=memory_mb, path=path, switch=switch, generation=generation)
    try:
        vmid = lab.vms.ensure_vm(name, spec)
    except COMMAND_ERRORS as e:
        fail("VM creation", e)
        return
    console.print(f"✅ VM {name} ready (vmid={vmid})")


@app.command("disk")
def ensure_disk(
    name: str = typer.Argument(..., help="Disk name"),
    vm_name: Optional[str] = typer.Option(None, "--vm", help="VM to attach the disk to"),
    size_gb: Optional[int] = typer.Option(None, "--size", help="Size in GB"),
    sizing: Optional[str] = typer.Option(None, "--sizing", help="dynamic or fixed"),
    path: Optional[str] = typer.Option(None, "--path", help="Storage for the volume"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Ensure a disk exists and is attached to its VM."""
    lab = get_lab(config_file)
    try:
        disk = lab.disks.ensure_disk(name, DiskSpec(size_gb=size_gb, sizing=sizing, path=path), vm_name)
    except COMMAND_ERRORS as e:
        fail("Disk creation", e)
        return
    where = f"attached as {disk.slot}" if disk.attached else "not attached"
    console.print(f"✅ Disk {disk.volid} ready ({where})")


# === INSTALL COMMANDS ===


@app.command("install-os")
def install_os(
    name: str = typer.Argument(..., help="VM name"),
    os_name: str = typer.Option("Server 2016", "--os", help="Operating system selector"),
    edition: str = typer.Option("ServerStandardCore", "--edition", help="Edition selector"),
    media_dir: Path = typer.Option(Path("."), "--media-dir", help="Directory with local ISOs"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Install Windows Server onto an existing VM."""
    lab = get_lab(config_file)
    try:
        lab.os_installer.install(name, os_name, edition, str(media_dir))
    except COMMAND_ERRORS as e:
        fail("Operating system install", e)


@app.command("sql")
def new_sql_server(
    name: str = typer.Argument(..., help="VM name"),
    os_name: str = typer.Option("Server 2016", "--os", help="Operating system selector"),
    edition: str = typer.Option("ServerStandardCore", "--edition", help="Edition selector"),
    join_domain: bool = typer.Option(False, "--join-domain", help="Join the lab domain afterwards"),
    media_dir: Path = typer.Option(Path("."), "--media-dir", help="Directory with local ISOs"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Build a SQL Server VM end to end."""
    lab = get_lab(config_file)
    try:
        lab.new_sql_server(name, os_name, edition, join_domain=join_domain, media_dir=str(media_dir))
    except COMMAND_ERRORS as e:
        fail("SQL Server build", e)


@app.command("web")
def new_web_server(
    name: str = typer.Argument(..., help="VM name"),
    os_name: str = typer.Option("Server 2016", "--os", help="Operating system selector"),
    edition: str = typer.Option("ServerStandardCore", "--edition", help="Edition selector"),
    join_domain: bool = typer.Option(False, "--join-domain", help="Join the lab domain afterwards"),
    media_dir: Path = typer.Option(Path("."), "--media-dir", help="Directory with local ISOs"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Build an IIS web server VM end to end."""
    lab = get_lab(config_file)
    try:
        lab.new_web_server(name, os_name, edition, join_domain=join_domain, media_dir=str(media_dir))
    except COMMAND_ERRORS as e:
        fail("Web server build", e)


@app.command("join-domain")
def join_domain(
    name: str = typer.Argument(..., help="VM name"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Join a VM to the lab domain."""
    lab = get_lab(config_file)
    try:
        lab.join_domain(name)
    except COMMAND_ERRORS as e:
        fail("Domain join", e)


# === DIRECTORY COMMANDS ===


@app.command("forest")
def new_forest(
    domain_name: Optional[str] = typer.Option(None, "--domain", help="Forest root domain"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Create the Active Directory forest on the domain controller VM."""
    lab = get_lab(config_file)
    try:
        lab.directory.new_forest(domain_name)
    except COMMAND_ERRORS as e:
        fail("Forest creation", e)


@app.command("bootstrap")
def bootstrap_directory(
    workbook: Path = typer.Argument(..., help="Spreadsheet with Groups and Users sheets"),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Create OUs, groups, users and memberships from a spreadsheet."""
    if not workbook.exists():
        console.print(f"❌ Workbook not found: {workbook}")
        raise typer.Exit(1)

    lab = get_lab(config_file)
    try:
        actions = lab.directory.bootstrap_from_workbook(workbook)
    except COMMAND_ERRORS as e:
        fail("Directory bootstrap", e)
        return

    table = Table(title="Directory Changes")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Target", style="yellow")
    for action in actions:
        table.add_row(action.kind, action.name, action.group or action.ou or "")
    console.print(table)
    console.print(f"✅ {len(actions)} directory changes applied")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """
    PowerLab - Windows lab provisioning

    Every command is idempotent: existing resources are left alone.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


if __name__ == "__main__":
    app()
