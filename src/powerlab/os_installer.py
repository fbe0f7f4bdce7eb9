"""
Unattended Windows Server installation onto a lab VM.

The OS ISO and the edition's autounattend ISO are mounted as CD-ROMs, the VM
boots from the OS medium and the install counts as finished once the QEMU
guest agent (installed by the answer file) responds.
"""

import logging
from typing import Optional, Tuple

from powerlab.config import LabConfig, OsImage
from powerlab.disk_manager import DiskManager, DiskSpec
from powerlab.errors import ProvisioningError, UnsupportedInputError
from powerlab.health_checker import VMHealthChecker
from powerlab.iso_manager import IsoManager
from powerlab.proxmox_api import ProxmoxClient
from powerlab.vm_manager import VMManager

logger = logging.getLogger(__name__)

OS_MEDIUM_SLOT = "ide2"
ANSWER_MEDIUM_SLOT = "ide3"


class OperatingSystemInstaller:
    """Installs Windows Server from the configured OS catalog."""

    def __init__(self, client: ProxmoxClient, config: LabConfig):
        self.client = client
        self.config = config
        self.vms = VMManager(client, config)
        self.disks = DiskManager(client, config)
        self.isos = IsoManager(client, config)
        self.health = VMHealthChecker(client)

    def resolve(self, os_name: str, edition: str) -> Tuple[OsImage, str]:
        """Return the OS image and answer ISO for a selector pair.

        Raises:
            UnsupportedInputError: If the OS or edition is not in the catalog
        """
        image = self.config.os_images.get(os_name)
        if image is None:
            raise UnsupportedInputError(
                f"Unrecognized operating system {os_name!r}; expected one of {', '.join(self.config.os_names())}"
            )
        answer_iso = image.editions.get(edition)
        if answer_iso is None:
            raise UnsupportedInputError(
                f"Unrecognized edition {edition!r} for {os_name}; expected one of {', '.join(sorted(image.editions))}"
            )
        return image, answer_iso

    def install(
        self,
        vm_name: str,
        os_name: str = "Server 2016",
        edition: str = "ServerStandardCore",
        media_dir: str = ".",
        os_disk_size_gb: Optional[int] = None,
    ) -> None:
        """
        Install the operating system unless the guest already runs one.

        Args:
            vm_name: Target VM, which must exist
            os_name: Catalog selector such as "Server 2016"
            edition: Edition selector such as "ServerStandardCore"
            media_dir: Local directory holding ISOs missing from Proxmox storage
            os_disk_size_gb: System disk size, defaults to the configured disk size
        """
        image, answer_iso = self.resolve(os_name, edition)

        vmid = self.vms.get_vmid(vm_name)
        if self.health.check_vm_health(vmid).is_healthy:
            logger.info(f"✅ {vm_name!r} already runs an operating system, skipping install")
            return

        system_disk = self.disks.ensure_disk(
            f"{vm_name.lower()}-os", DiskSpec(size_gb=os_disk_size_gb), vm_name=vm_name
        )
        os_volid = self.isos.ensure_iso(image.iso, media_dir)
        answer_volid = self.isos.ensure_iso(answer_iso, media_dir)

        logger.info(f"💿 Installing {os_name} {edition} on {vm_name!r}")
        self.isos.mount_medium(vmid, os_volid, OS_MEDIUM_SLOT)
        self.isos.mount_medium(vmid, answer_volid, ANSWER_MEDIUM_SLOT)
        try:
            self.vms.set_boot_order(vm_name, [OS_MEDIUM_SLOT, system_disk.slot or "scsi0"])
            self.vms.start(vm_name)
            if not self.health.wait_until_healthy(vmid, self.config.os_install_timeout, self.config.poll_interval):
                raise ProvisioningError(
                    f"{os_name} install on {vm_name!r} did not finish within {self.config.os_install_timeout}s"
                )
        finally:
            self.isos.dismount_medium(vmid, OS_MEDIUM_SLOT)
            self.isos.dismount_medium(vmid, ANSWER_MEDIUM_SLOT)

        self.vms.set_boot_order(vm_name, [system_disk.slot or "scsi0"])
        logger.info(f"✅ {os_name} installed on {vm_name!r}")
