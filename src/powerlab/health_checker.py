"""VM and guest health checking."""

import logging
import time
from dataclasses import dataclass

from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)


@dataclass
class VMHealthStatus:
    """Health status of a VM."""

    is_healthy: bool
    reason: str


class VMHealthChecker:
    """Check whether a VM is running and its guest operating system answers."""

    def __init__(self, client: ProxmoxClient):
        """Initialize VM health checker.

        Args:
            client: Proxmox client for the lab node
        """
        self.client = client

    def check_vm_health(self, vmid: int) -> VMHealthStatus:
        """Check if the VM is running with a responsive guest agent.

        Args:
            vmid: VM ID to check

        Returns:
            VMHealthStatus with health status and reason
        """
        vm_status = self.client.vm_status(vmid)
        if vm_status != "running":
            return VMHealthStatus(is_healthy=False, reason=f"VM is {vm_status}")

        if not self.client.agent_ping(vmid):
            return VMHealthStatus(is_healthy=False, reason="Guest agent not responding")

        return VMHealthStatus(is_healthy=True, reason="VM is running and guest agent responds")

    def wait_until_healthy(self, vmid: int, timeout: int, interval: int) -> bool:
        """Poll until the VM is healthy or ``timeout`` seconds pass.

        Returns:
            True if the VM became healthy in time
        """
        deadline = time.time() + timeout
        while True:
            health = self.check_vm_health(vmid)
            if health.is_healthy:
                return True
            if time.time() >= deadline:
                logger.warning(f"VM {vmid} still unhealthy after {timeout}s: {health.reason}")
                return False
            logger.debug(f"VM {vmid} not ready yet: {health.reason}")
            time.sleep(interval)
