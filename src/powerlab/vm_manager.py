"""
src/powerlab/vm_manager.py

Create lab VMs on Proxmox, set their boot order and start them.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from powerlab.config import VM_GENERATIONS, LabConfig
from powerlab.errors import ConfigurationError, ProvisioningError
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)


@dataclass
class VMSpec:
    """Settings for a new VM; unset fields fall back to LabConfig."""

    memory_mb: Optional[int] = None
    path: Optional[str] = None
    switch: Optional[str] = None
    generation: Optional[int] = None
    cores: Optional[int] = None


class VMManager:
    """Handles Windows lab VM creation on Proxmox."""

    def __init__(self, client: ProxmoxClient, config: LabConfig):
        self.client = client
        self.config = config

    def vm_exists(self, name: str) -> Optional[int]:
        """Return existing vmid if a VM with that name exists, else None."""
        return self.client.find_vm(name)

    def get_vmid(self, name: str) -> int:
        """Return the vmid of an existing VM, raising if it is missing."""
        vmid = self.client.find_vm(name)
        if vmid is None:
            raise ProvisioningError(f"VM {name!r} does not exist on {self.client.node!r}")
        return vmid

    def _build_create_args(self, name: str, spec: VMSpec) -> Dict[str, Any]:
        memory_mb = spec.memory_mb or self.config.memory_mb
        storage = spec.path or self.config.vm_storage
        switch = spec.switch or self.config.switch_name
        generation = spec.generation or self.config.generation
        cores = spec.cores or self.config.cores

        if generation not in VM_GENERATIONS:
            raise ConfigurationError(f"Invalid VM generation {generation}, must be 1 or 2")

        create_args: Dict[str, Any] = {
            "name": name,
            "memory": memory_mb,
            "cores": cores,
            "ostype": "win10",
            "scsihw": "virtio-scsi-single",
            "net0": f"e1000,bridge={switch}",
            "agent": 1,
        }
        if generation == 2:
            create_args.update(
                bios="ovmf",
                machine="q35",
                efidisk0=f"{storage}:1,efitype=4m,pre-enrolled-keys=1",
            )
        else:
            create_args["bios"] = "seabios"
        return create_args

    def ensure_vm(self, name: str, spec: Optional[VMSpec] = None) -> int:
        """
        Create the VM unless one with the same name already exists.

        Args:
            name: VM name
            spec: Memory, storage path, switch and generation overrides

        Returns:
            vmid of the existing or created VM

        Raises:
            ProvisioningError: If Proxmox refuses the creation
        """
        if not name:
            raise ValueError("VM name must not be empty")

        vmid = self.vm_exists(name)
        if vmid is not None:
            logger.info(f"✅ VM {name!r} (vmid={vmid}) already exists, skipping")
            return vmid

        create_args = self._build_create_args(name, spec or VMSpec())
        vmid = self.client.get_next_available_vmid()
        logger.info(
            f"🆕 Creating VM {name!r} on {self.client.node!r}: "
            f"{create_args['cores']} CPUs, {create_args['memory']}MB RAM (vmid={vmid})"
        )
        self.client.create_vm(vmid, **create_args)
        return vmid

    def set_boot_order(self, name: str, devices: List[str]) -> None:
        """Set the firmware boot order, e.g. ["ide2", "scsi0"]."""
        vmid = self.get_vmid(name)
        order = ";".join(devices)
        logger.info(f"🔧 Boot order of {name!r} → {order}")
        self.client.update_vm_config(vmid, boot=f"order={order}")

    def start(self, name: str) -> None:
        """Start the VM and wait for it to report as running."""
        vmid = self.get_vmid(name)
        if self.client.vm_status(vmid) == "running":
            logger.info(f"✅ VM {name!r} is already running")
            return

        logger.info(f"▶️  Starting VM {name!r} (vmid={vmid})")
        self.client.start_vm(vmid)

        deadline = time.time() + self.config.vm_start_timeout
        while time.time() < deadline:
            if self.client.vm_status(vmid) == "running":
                logger.info(f"✅ VM {name!r} (vmid={vmid}) is running")
                return
            time.sleep(5)
        raise ProvisioningError(f"VM {name!r} did not start within {self.config.vm_start_timeout}s")

    def reboot(self, name: str) -> None:
        vmid = self.get_vmid(name)
        logger.info(f"🔄 Rebooting VM {name!r} (vmid={vmid})")
        self.client.reboot_vm(vmid)
