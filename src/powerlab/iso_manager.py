import logging
import os
from typing import Optional

import requests

from powerlab.config import LabConfig
from powerlab.errors import ProvisioningError
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

CDROM_EMPTY = "none,media=cdrom"


class IsoManager:
    """Handles installation media: local download, upload to Proxmox and CD-ROM mounting."""

    def __init__(self, client: ProxmoxClient, config: LabConfig):
        self.client = client
        self.config = config

    @staticmethod
    def download_iso(url: str, path: str) -> str:
        """Download ISO if not already present locally."""
        if os.path.isfile(path):
            logger.info(f"ISO {path} already exists locally. Skipping download.")
            return path

        logger.info(f"Downloading {path} from {url}...")
        response = requests.get(url, stream=True, timeout=60)
        response.raise_for_status()
        with open(path, "wb") as iso_file:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    iso_file.write(chunk)
        logger.info(f"Downloaded {path}.")
        return path

    def ensure_local(self, path: str, url: Optional[str] = None) -> str:
        """Return ``path`` once it exists locally, downloading it from ``url`` if needed."""
        if os.path.isfile(path):
            return path
        if not url:
            raise FileNotFoundError(f"Installation medium not found at {path}")
        return self.download_iso(url, path)

    def ensure_iso(self, iso_name: str, local_dir: str = ".") -> str:
        """Upload ``iso_name`` to the ISO storage unless it is already there.

        Returns:
            The ISO volid, e.g. ``local:iso/en_windows_server_2016_x64_dvd.iso``
        """
        storage = self.config.iso_storage
        volid = f"{storage}:iso/{iso_name}"
        if self.client.iso_exists(storage, iso_name):
            logger.info(f"✅ ISO {iso_name} already exists in storage {storage}. Skipping upload.")
            return volid

        local_path = os.path.join(local_dir, iso_name)
        if not os.path.isfile(local_path):
            raise ProvisioningError(f"ISO {iso_name} is neither in storage {storage} nor at {local_path}")

        logger.info(f"📀 Uploading {iso_name} to {self.client.node} storage {storage}")
        self.client.upload_iso(storage, local_path)
        return volid

    def mount_medium(self, vmid: int, volid: str, slot: str = "ide2") -> None:
        """Insert an ISO into the VM's CD-ROM drive at ``slot``."""
        logger.info(f"📀 Mounting {volid} on VM {vmid} {slot}")
        self.client.update_vm_config(vmid, **{slot: f"{volid},media=cdrom"})

    def dismount_medium(self, vmid: int, slot: str = "ide2") -> None:
        """Eject whatever medium is in the VM's CD-ROM drive at ``slot``."""
        logger.info(f"⏏️  Dismounting {slot} on VM {vmid}")
        self.client.update_vm_config(vmid, **{slot: CDROM_EMPTY})
