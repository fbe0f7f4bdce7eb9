"""
Idempotent virtual disk management.

Disks are storage volumes named ``vm-<vmid>-<name>``. After a volume is
ensured it is attached to the target VM on the next free SCSI slot, unless
one of the VM's drives already points at it.
"""

import logging
import re
import warnings
from dataclasses import dataclass
from typing import Any, Dict, Optional

from powerlab.config import DISK_SIZINGS, LabConfig
from powerlab.errors import ConfigurationError, NotFoundWarning, ProvisioningError
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

DRIVE_KEY = re.compile(r"^(ide|sata|scsi|virtio)\d+$")
MAX_SCSI_SLOTS = 31


@dataclass
class DiskSpec:
    """Size, sizing mode and storage of a disk; unset fields use LabConfig."""

    size_gb: Optional[int] = None
    sizing: Optional[str] = None
    path: Optional[str] = None


@dataclass
class DiskReference:
    """An ensured disk volume and where it ended up."""

    volid: str
    vmid: Optional[int]
    slot: Optional[str] = None

    @property
    def attached(self) -> bool:
        return self.slot is not None


def _volume_basename(volid: str) -> str:
    """'local:101/vm-101-data.qcow2' -> 'vm-101-data.qcow2'."""
    return volid.split(":", 1)[-1].rsplit("/", 1)[-1]


class DiskManager:
    """Ensures data disks exist and are attached to their VM."""

    def __init__(self, client: ProxmoxClient, config: LabConfig):
        self.client = client
        self.config = config

    def find_volume(self, name: str, storage: str) -> Optional[str]:
        """Return the volid of the disk called ``name`` on ``storage``, or None."""
        pattern = re.compile(rf"^vm-\d+-{re.escape(name)}(\.\w+)?$")
        for volume in self.client.list_volumes(storage):
            volid = volume.get("volid", "")
            if pattern.match(_volume_basename(volid)):
                return volid
        return None

    def ensure_disk(self, name: str, spec: Optional[DiskSpec] = None, vm_name: Optional[str] = None) -> DiskReference:
        """
        Create the disk volume if absent and attach it to ``vm_name``.

        A missing VM only produces a NotFoundWarning; the disk is still
        ensured, owned by the configured orphan VMID, and returned unattached.

        Args:
            name: Disk name, unique on the storage
            spec: Size, sizing mode and storage overrides
            vm_name: VM the disk belongs to

        Returns:
            DiskReference describing the volume and its slot
        """
        if not name:
            raise ValueError("Disk name must not be empty")

        spec = spec or DiskSpec()
        size_gb = spec.size_gb or self.config.disk_size_gb
        sizing = (spec.sizing or self.config.disk_sizing).lower()
        storage = spec.path or self.config.disk_storage
        if sizing not in DISK_SIZINGS:
            raise ConfigurationError(f"Invalid disk sizing {sizing!r}, must be dynamic or fixed")

        vmid = self.client.find_vm(vm_name) if vm_name else None
        if vm_name and vmid is None:
            message = f"VM {vm_name!r} not found, disk {name!r} will not be attached"
            logger.warning(f"⚠️  {message}")
            warnings.warn(message, NotFoundWarning, stacklevel=2)

        volid = self.find_volume(name, storage)
        if volid is not None:
            logger.info(f"✅ Disk {name!r} already exists as {volid}, skipping creation")
        else:
            owner = vmid if vmid is not None else self.config.orphan_vmid
            fmt = "qcow2" if sizing == "dynamic" else "raw"
            filename = f"vm-{owner}-{name}.{fmt}"
            logger.info(f"💾 Creating {sizing} disk {filename} ({size_gb}G) on {storage}")
            volid = self.client.allocate_volume(storage, owner, filename, f"{size_gb}G", fmt)

        if vmid is None:
            return DiskReference(volid=volid, vmid=None)

        slot = self.ensure_attached(vmid, volid)
        return DiskReference(volid=volid, vmid=vmid, slot=slot)

    def attached_slot(self, vm_config: Dict[str, Any], volid: str) -> Optional[str]:
        """Return the drive key already pointing at ``volid``, or None."""
        for key, value in vm_config.items():
            if DRIVE_KEY.match(key) and str(value).split(",", 1)[0] == volid:
                return key
        return None

    def ensure_attached(self, vmid: int, volid: str) -> str:
        """Attach ``volid`` to the VM unless one of its drives already uses it."""
        vm_config = self.client.get_vm_config(vmid)

        slot = self.attached_slot(vm_config, volid)
        if slot is not None:
            logger.info(f"✅ {volid} already attached to VM {vmid} as {slot}")
            return slot

        for index in range(MAX_SCSI_SLOTS):
            slot = f"scsi{index}"
            if slot not in vm_config:
                break
        else:
            raise ProvisioningError(f"VM {vmid} has no free SCSI slot for {volid}")

        logger.info(f"🔗 Attaching {volid} to VM {vmid} as {slot}")
        self.client.update_vm_config(vmid, **{slot: volid})
        return slot
