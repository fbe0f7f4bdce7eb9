"""PowerLab: idempotent Windows lab provisioning on Proxmox VE."""

__version__ = "0.1.0"
