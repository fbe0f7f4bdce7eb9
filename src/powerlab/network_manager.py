"""
Idempotent virtual switch management.

A lab switch is a Linux bridge on the Proxmox node. External switches
enslave a physical adapter; internal switches have no uplink.
"""

import logging
from typing import Optional

from powerlab.config import SWITCH_TYPES, LabConfig
from powerlab.errors import ConfigurationError
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)


class SwitchManager:
    """Ensures lab switches exist on the node."""

    def __init__(self, client: ProxmoxClient, config: LabConfig):
        self.client = client
        self.config = config

    def switch_exists(self, name: str) -> bool:
        return name in self.client.list_bridges()

    def ensure_switch(self, name: Optional[str] = None, switch_type: Optional[str] = None) -> str:
        """
        Create the switch unless a bridge with that name already exists.

        Args:
            name: Bridge name, defaults to the configured lab switch
            switch_type: "external" or "internal", defaults to the configured type

        Returns:
            The bridge name
        """
        name = name or self.config.switch_name
        switch_type = (switch_type or self.config.switch_type).lower()
        if not name:
            raise ValueError("Switch name must not be empty")
        if switch_type not in SWITCH_TYPES:
            raise ConfigurationError(f"Invalid switch type {switch_type!r}, must be external or internal")

        if self.switch_exists(name):
            logger.info(f"✅ Switch {name!r} already exists, skipping")
            return name

        ports = None
        if switch_type == "external":
            ports = self.config.external_adapter
            if not ports:
                raise ConfigurationError("An external switch needs POWERLAB_EXTERNAL_ADAPTER")

        logger.info(f"🆕 Creating {switch_type} switch {name!r} on {self.client.node!r}")
        self.client.create_bridge(name, bridge_ports=ports)
        self.client.reload_network()
        return name
