"""
Configuration management for PowerLab.

Settings come from POWERLAB_* environment variables (a local .env file is
honoured) and can be overlaid with a YAML lab file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin

import yaml
from dotenv import load_dotenv

from powerlab.errors import ConfigurationError

SWITCH_TYPES = ("external", "internal")
DISK_SIZINGS = ("dynamic", "fixed")
VM_GENERATIONS = (1, 2)

# VMIDs handed out to new VMs; orphan disks are owned by an ID outside it
AUTO_VMID_RANGE = range(100, 10000)

_SECRET_FIELDS = ("api_token", "guest_password", "domain_password", "safe_mode_password", "sql_service_password")


@dataclass
class Credential:
    """Username/password pair used for guest sessions and domain operations."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password='********')"


@dataclass
class OsImage:
    """Installation media for one operating system.

    ``editions`` maps an edition selector to the ISO holding its
    autounattend answer file.
    """

    iso: str
    editions: Dict[str, str] = field(default_factory=dict)


def _default_os_images() -> Dict[str, OsImage]:
    return {
        "Server 2016": OsImage(
            iso="en_windows_server_2016_x64_dvd.iso",
            editions={
                "ServerStandardCore": "unattend-2016-standard-core.iso",
                "ServerStandard": "unattend-2016-standard.iso",
                "ServerDataCenterCore": "unattend-2016-datacenter-core.iso",
                "ServerDataCenter": "unattend-2016-datacenter.iso",
            },
        ),
        "Server 2019": OsImage(
            iso="en_windows_server_2019_x64_dvd.iso",
            editions={
                "ServerStandardCore": "unattend-2019-standard-core.iso",
                "ServerStandard": "unattend-2019-standard.iso",
                "ServerDataCenterCore": "unattend-2019-datacenter-core.iso",
                "ServerDataCenter": "unattend-2019-datacenter.iso",
            },
        ),
    }


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _coerce_setting(name: str, field_type: Any, value: Any, path: Path) -> Any:
    """Convert a lab file value to the type of the LabConfig field it sets."""
    optional = get_origin(field_type) is Union and type(None) in get_args(field_type)
    if optional:
        field_type = next(t for t in get_args(field_type) if t is not type(None))

    if value is None:
        if optional:
            return None
        raise ConfigurationError(f"Lab setting {name!r} in {path} must not be empty")

    if field_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "0", "false", "no"):
            return value.strip().lower() in ("1", "true", "yes")
    elif field_type is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                pass
    elif field_type is str:
        if isinstance(value, str):
            return value.lower() if name in ("switch_type", "disk_sizing") else value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)

    raise ConfigurationError(
        f"Lab setting {name!r} in {path} must be {getattr(field_type, '__name__', field_type)}, got {value!r}"
    )


def _os_images_setting(value: Any, path: Path) -> Dict[str, OsImage]:
    """Build the OS catalog from the ``os_images`` mapping of a lab file."""
    if not isinstance(value, dict):
        raise ConfigurationError(f"os_images in {path} must map OS names to images")

    images = {}
    for name, image in value.items():
        if not isinstance(image, dict) or not image.get("iso"):
            raise ConfigurationError(f"os_images entry {name!r} in {path} needs an 'iso' value")
        editions = image.get("editions") or {}
        if not isinstance(editions, dict):
            raise ConfigurationError(f"Editions of {name!r} in {path} must map edition names to answer ISOs")
        images[str(name)] = OsImage(iso=str(image["iso"]), editions={str(k): str(v) for k, v in editions.items()})
    return images


@dataclass
class LabConfig:
    """Complete lab configuration passed explicitly to every component."""

    # Proxmox connection
    proxmox_host: str = "pve"
    api_token: Optional[str] = None
    verify_ssl: bool = False
    node: str = "pve"

    # Storage
    vm_storage: str = "local-lvm"
    disk_storage: str = "local"
    iso_storage: str = "local"

    # Switch
    switch_name: str = "vmbr10"
    switch_type: str = "internal"
    external_adapter: Optional[str] = None

    # VM and disk defaults
    memory_mb: int = 4096
    cores: int = 2
    generation: int = 2
    disk_size_gb: int = 40
    disk_sizing: str = "dynamic"
    orphan_vmid: int = 99999

    # Credentials
    guest_user: str = "Administrator"
    guest_password: Optional[str] = None
    domain_name: str = "powerlab.local"
    domain_user: str = "POWERLAB\\Administrator"
    domain_password: Optional[str] = None
    safe_mode_password: Optional[str] = None
    dc_vm_name: str = "LABDC"

    # SQL Server
    sql_iso_path: str = "SQLServer2016.iso"
    sql_iso_url: Optional[str] = None
    sql_instance_name: str = "MSSQLSERVER"
    sql_template_path: str = "ConfigurationFile.ini"
    sql_service_account: str = "PowerLabUser"
    sql_service_password: Optional[str] = None
    sql_sysadmins: str = "POWERLAB\\Domain Admins"
    remote_temp_dir: str = "C:\\"
    check_installer_exit_code: bool = True

    # Remote sessions and timeouts
    ssh_port: int = 22
    ssh_timeout: int = 30
    vm_start_timeout: int = 180
    os_install_timeout: int = 3600
    poll_interval: int = 15

    os_images: Dict[str, OsImage] = field(default_factory=_default_os_images)

    @property
    def guest_credential(self) -> Credential:
        """Local administrator credential for freshly installed guests."""
        return Credential(self.guest_user, self.guest_password or "")

    @property
    def domain_credential(self) -> Credential:
        """Domain administrator credential."""
        return Credential(self.domain_user, self.domain_password or "")

    @classmethod
    def from_environment(cls) -> "LabConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        return cls(
            proxmox_host=os.getenv("POWERLAB_PROXMOX_HOST", "pve"),
            api_token=os.getenv("POWERLAB_API_TOKEN"),
            verify_ssl=_env_bool("POWERLAB_VERIFY_SSL", "false"),
            node=os.getenv("POWERLAB_NODE", "pve"),
            vm_storage=os.getenv("POWERLAB_VM_STORAGE", "local-lvm"),
            disk_storage=os.getenv("POWERLAB_DISK_STORAGE", "local"),
            iso_storage=os.getenv("POWERLAB_ISO_STORAGE", "local"),
            switch_name=os.getenv("POWERLAB_SWITCH_NAME", "vmbr10"),
            switch_type=os.getenv("POWERLAB_SWITCH_TYPE", "internal").lower(),
            external_adapter=os.getenv("POWERLAB_EXTERNAL_ADAPTER"),
            memory_mb=int(os.getenv("POWERLAB_VM_MEMORY_MB", "4096")),
            cores=int(os.getenv("POWERLAB_VM_CORES", "2")),
            generation=int(os.getenv("POWERLAB_VM_GENERATION", "2")),
            disk_size_gb=int(os.getenv("POWERLAB_DISK_SIZE_GB", "40")),
            disk_sizing=os.getenv("POWERLAB_DISK_SIZING", "dynamic").lower(),
            orphan_vmid=int(os.getenv("POWERLAB_ORPHAN_VMID", "99999")),
            guest_user=os.getenv("POWERLAB_GUEST_USER", "Administrator"),
            guest_password=os.getenv("POWERLAB_GUEST_PASSWORD"),
            domain_name=os.getenv("POWERLAB_DOMAIN_NAME", "powerlab.local"),
            domain_user=os.getenv("POWERLAB_DOMAIN_USER", "POWERLAB\\Administrator"),
            domain_password=os.getenv("POWERLAB_DOMAIN_PASSWORD"),
            safe_mode_password=os.getenv("POWERLAB_SAFE_MODE_PASSWORD"),
            dc_vm_name=os.getenv("POWERLAB_DC_VM_NAME", "LABDC"),
            sql_iso_path=os.getenv("POWERLAB_SQL_ISO_PATH", "SQLServer2016.iso"),
            sql_iso_url=os.getenv("POWERLAB_SQL_ISO_URL"),
            sql_instance_name=os.getenv("POWERLAB_SQL_INSTANCE_NAME", "MSSQLSERVER"),
            sql_template_path=os.getenv("POWERLAB_SQL_TEMPLATE_PATH", "ConfigurationFile.ini"),
            sql_service_account=os.getenv("POWERLAB_SQL_SERVICE_ACCOUNT", "PowerLabUser"),
            sql_service_password=os.getenv("POWERLAB_SQL_SERVICE_PASSWORD"),
            sql_sysadmins=os.getenv("POWERLAB_SQL_SYSADMINS", "POWERLAB\\Domain Admins"),
            remote_temp_dir=os.getenv("POWERLAB_REMOTE_TEMP_DIR", "C:\\"),
            check_installer_exit_code=_env_bool("POWERLAB_CHECK_INSTALLER_EXIT_CODE", "true"),
            ssh_port=int(os.getenv("POWERLAB_SSH_PORT", "22")),
            ssh_timeout=int(os.getenv("POWERLAB_SSH_TIMEOUT", "30")),
            vm_start_timeout=int(os.getenv("POWERLAB_VM_START_TIMEOUT", "180")),
            os_install_timeout=int(os.getenv("POWERLAB_OS_INSTALL_TIMEOUT", "3600")),
            poll_interval=int(os.getenv("POWERLAB_POLL_INTERVAL", "15")),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LabConfig":
        """
        Load a YAML lab file on top of the environment configuration.

        Args:
            path: YAML file whose top-level keys are LabConfig field names

        Raises:
            ConfigurationError: If the file is missing, malformed or has unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Lab file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Lab file {path} is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Lab file {path} must contain a mapping")

        config = cls.from_environment()
        settings = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(settings))
        if unknown:
            raise ConfigurationError(f"Unknown lab settings in {path}: {', '.join(unknown)}")

        for key, value in data.items():
            if key == "os_images":
                value = _os_images_setting(value, path)
            else:
                value = _coerce_setting(key, settings[key].type, value, path)
            setattr(config, key, value)
        return config

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.api_token:
            raise ConfigurationError("POWERLAB_API_TOKEN is not set")

        if "!" not in self.api_token or "=" not in self.api_token:
            raise ConfigurationError("API token must look like 'user@realm!tokenname=secret'")

        if self.memory_mb < 512:
            raise ConfigurationError(f"Invalid VM memory {self.memory_mb}MB, must be at least 512MB")

        if self.generation not in VM_GENERATIONS:
            raise ConfigurationError(f"Invalid VM generation {self.generation}, must be 1 or 2")

        if self.switch_type not in SWITCH_TYPES:
            raise ConfigurationError(f"Invalid switch type {self.switch_type!r}, must be external or internal")

        if self.switch_type == "external" and not self.external_adapter:
            raise ConfigurationError("An external switch needs POWERLAB_EXTERNAL_ADAPTER")

        if self.disk_sizing not in DISK_SIZINGS:
            raise ConfigurationError(f"Invalid disk sizing {self.disk_sizing!r}, must be dynamic or fixed")

        if self.orphan_vmid in AUTO_VMID_RANGE or self.orphan_vmid < AUTO_VMID_RANGE.start:
            raise ConfigurationError(
                f"Invalid orphan VMID {self.orphan_vmid}, must be at least {AUTO_VMID_RANGE.stop} "
                f"so no new VM takes it"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display, with secrets masked."""
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _SECRET_FIELDS:
                value = "********" if value else None
            elif f.name == "os_images":
                value = {name: {"iso": img.iso, "editions": sorted(img.editions)} for name, img in value.items()}
            result[f.name] = value
        return result

    def os_names(self) -> List[str]:
        """Operating system selectors known to the catalog."""
        return sorted(self.os_images)
