from typing import Any, Dict, List, Optional
import ipaddress
import logging
import os

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from powerlab.config import AUTO_VMID_RANGE, LabConfig
from powerlab.errors import ConfigurationError, ProvisioningError

logger = logging.getLogger(__name__)


class ProxmoxClient:
    """Wrapper around the Proxmox API for the lab node."""

    def __init__(self, config: LabConfig) -> None:
        self.config = config
        self.host = config.proxmox_host
        self.node = config.node

        # Extract API token components
        if config.api_token is None:
            raise ConfigurationError("POWERLAB_API_TOKEN environment variable is not set")
        user_token, self.api_token = config.api_token.split("=", 1)
        self.user, self.token_name = user_token.split("!", 1)

        self.proxmox: Any = ProxmoxAPI(
            self.host,
            user=self.user,
            token_name=self.token_name,
            token_value=self.api_token,
            verify_ssl=config.verify_ssl,
        )

    @property
    def _node(self) -> Any:
        return self.proxmox.nodes(self.node)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------
    def list_bridges(self) -> List[str]:
        """Return the names of all Linux bridges on the node."""
        return [iface["iface"] for iface in self._node.network.get(type="bridge")]

    def create_bridge(self, name: str, bridge_ports: Optional[str] = None) -> None:
        """Create a Linux bridge, optionally enslaving a physical port."""
        params: Dict[str, Any] = {"iface": name, "type": "bridge", "autostart": 1}
        if bridge_ports:
            params["bridge_ports"] = bridge_ports
        try:
            self._node.network.post(**params)
        except ResourceException as e:
            raise ProvisioningError(str(e)) from e

    def reload_network(self) -> None:
        """Apply pending network configuration changes on the node."""
        try:
            self._node.network.put()
        except ResourceException as e:
            raise ProvisioningError(str(e)) from e

    # ------------------------------------------------------------------
    # Virtual machines
    # ------------------------------------------------------------------
    def find_vm(self, name: str) -> Optional[int]:
        """Return the vmid of the VM named ``name``, or None."""
        for vm in self._node.qemu.get():
            if vm.get("name") == name:
                return int(vm["vmid"])
        return None

    def get_next_available_vmid(self) -> int:
        """Find the next free VMID using a cluster-wide resources query."""
        used = {int(resource["vmid"]) for resource in self.proxmox.cluster.resources.get(type="vm")}

        for candidate in AUTO_VMID_RANGE:
            if candidate not in used:
                return candidate
        raise ProvisioningError("No available VMIDs found")

    def create_vm(self, vmid: int, **params: Any) -> None:
        """Create a QEMU VM shell."""
        try:
            self._node.qemu.create(vmid=vmid, **params)
        except ResourceException as e:
            raise ProvisioningError(str(e)) from e

    def get_vm_config(self, vmid: int) -> Dict[str, Any]:
        return self._node.qemu(vmid).config.get()  # type: ignore[no-any-return]

    def update_vm_config(self, vmid: int, **params: Any) -> None:
        """Change VM configuration keys (drives, boot order, media)."""
        try:
            self._node.qemu(vmid).config.post(**params)
        except ResourceException as e:
            raise ProvisioningError(str(e)) from e

    def vm_status(self, vmid: int) -> str:
        return self._node.qemu(vmid).status.current.get().get("status", "unknown")  # type: ignore[no-any-return]

    def start_vm(self, vmid: int) -> None:
        self._node.qemu(vmid).status.start.post()

    def reboot_vm(self, vmid: int) -> None:
        self._node.qemu(vmid).status.reboot.post()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def list_volumes(self, storage: str) -> List[Dict[str, Any]]:
        """Retrieve disk image volumes on a storage."""
        return self._node.storage(storage).content.get(content="images")  # type: ignore[no-any-return]

    def allocate_volume(self, storage: str, vmid: int, filename: str, size: str, fmt: Optional[str] = None) -> str:
        """Allocate a disk image volume and return its volid."""
        params: Dict[str, Any] = {"vmid": vmid, "filename": filename, "size": size}
        if fmt:
            params["format"] = fmt
        try:
            return self._node.storage(storage).content.post(**params)  # type: ignore[no-any-return]
        except ResourceException as e:
            raise ProvisioningError(str(e)) from e

    def iso_exists(self, storage: str, iso_name: str) -> bool:
        """Check if the ISO already exists in Proxmox storage."""
        for item in self._node.storage(storage).content.get(content="iso"):
            if item.get("volid", "").endswith(f"iso/{iso_name}"):
                return True
        return False

    def upload_iso(self, storage: str, iso_path: str) -> None:
        """Upload an ISO to Proxmox storage."""
        with open(iso_path, "rb") as iso_file:
            try:
                self._node.storage(storage).upload.post(content="iso", filename=iso_file)
            except ResourceException as e:
                raise ProvisioningError(str(e)) from e
        logger.info(f"Uploaded {os.path.basename(iso_path)} to {self.node} storage {storage}")

    # ------------------------------------------------------------------
    # Guest agent
    # ------------------------------------------------------------------
    def agent_ping(self, vmid: int) -> bool:
        """Return True when the QEMU guest agent in the VM answers."""
        try:
            self._node.qemu(vmid).agent.ping.post()
            return True
        except ResourceException:
            return False

    def guest_addresses(self, vmid: int) -> List[str]:
        """Routable IPv4 addresses reported by the guest agent."""
        try:
            reply = self._node.qemu(vmid).agent("network-get-interfaces").get()
        except ResourceException as e:
            logger.debug(f"Guest agent of VM {vmid} did not answer: {e}")
            return []

        addresses = []
        for iface in reply.get("result", []):
            for addr in iface.get("ip-addresses", []):
                if addr.get("ip-address-type") != "ipv4":
                    continue
                ip = ipaddress.ip_address(addr["ip-address"])
                if ip.is_loopback or ip.is_link_local:
                    continue
                addresses.append(str(ip))
        return addresses
