"""Top-level lab workflows: each step aborts the rest on failure, nothing is rolled back."""

import logging
from typing import Optional

from powerlab.config import Credential, LabConfig
from powerlab.directory import DirectoryBootstrap
from powerlab.disk_manager import DiskManager
from powerlab.guest_session import SessionFactory, open_guest_session
from powerlab.network_manager import SwitchManager
from powerlab.os_installer import OperatingSystemInstaller
from powerlab.proxmox_api import ProxmoxClient
from powerlab.sql_installer import SqlServerInstaller
from powerlab.vm_manager import VMManager, VMSpec

logger = logging.getLogger(__name__)

DOMAIN_JOIN_SCRIPT = r"""
$computer = Get-CimInstance -ClassName Win32_ComputerSystem
if ($computer.PartOfDomain -and $computer.Domain -eq $PowerLabArgs.DomainName) {
    @{ Joined = $false } | ConvertTo-Json -Compress
    return
}
$password = ConvertTo-SecureString -String $PowerLabArgs.Password -AsPlainText -Force
$credential = New-Object System.Management.Automation.PSCredential($PowerLabArgs.UserName, $password)
Add-Computer -DomainName $PowerLabArgs.DomainName -Credential $credential -Force
@{ Joined = $true } | ConvertTo-Json -Compress
"""

WEB_SERVER_SCRIPT = r"""
if ((Get-WindowsFeature -Name Web-Server).Installed) {
    @{ Installed = $false } | ConvertTo-Json -Compress
    return
}
Install-WindowsFeature -Name Web-Server -IncludeManagementTools | Out-Null
@{ Installed = $true } | ConvertTo-Json -Compress
"""


class PowerLab:
    """Composes the lab building blocks into end-to-end server workflows."""

    def __init__(
        self,
        config: LabConfig,
        client: Optional[ProxmoxClient] = None,
        session_factory: SessionFactory = open_guest_session,
    ):
        self.config = config
        self.client = client or ProxmoxClient(config)
        self.session_factory = session_factory
        self.switches = SwitchManager(self.client, config)
        self.vms = VMManager(self.client, config)
        self.disks = DiskManager(self.client, config)
        self.os_installer = OperatingSystemInstaller(self.client, config)
        self.sql = SqlServerInstaller(self.client, config, session_factory)
        self.directory = DirectoryBootstrap(self.client, config, session_factory)

    def new_lab(self) -> str:
        """Ensure the lab switch exists."""
        return self.switches.ensure_switch()

    def join_domain(
        self,
        vm_name: str,
        credential: Optional[Credential] = None,
        domain_credential: Optional[Credential] = None,
    ) -> bool:
        """
        Join ``vm_name`` to the lab domain and reboot it.

        Returns:
            True if the VM joined, False if it already was a member
        """
        credential = credential or self.config.guest_credential
        domain_credential = domain_credential or self.config.domain_credential

        with self.session_factory(self.client, vm_name, credential, self.config) as session:
            result = session.run_script(
                DOMAIN_JOIN_SCRIPT,
                {
                    "DomainName": self.config.domain_name,
                    "UserName": domain_credential.username,
                    "Password": domain_credential.password,
                },
            )

        if not (isinstance(result, dict) and result.get("Joined")):
            logger.info(f"✅ {vm_name} is already a member of {self.config.domain_name}")
            return False

        logger.info(f"🔗 {vm_name} joined {self.config.domain_name}, rebooting")
        self.vms.reboot(vm_name)
        return True

    def install_web_server(self, vm_name: str, credential: Optional[Credential] = None) -> bool:
        """Install the IIS role unless it is already present."""
        credential = credential or self.config.guest_credential
        with self.session_factory(self.client, vm_name, credential, self.config) as session:
            result = session.run_script(WEB_SERVER_SCRIPT)

        installed = bool(isinstance(result, dict) and result.get("Installed"))
        if installed:
            logger.info(f"✅ IIS installed on {vm_name}")
        else:
            logger.info(f"✅ IIS already present on {vm_name}, skipping")
        return installed

    def new_sql_server(
        self,
        name: str,
        os_name: str = "Server 2016",
        edition: str = "ServerStandardCore",
        join_domain: bool = False,
        spec: Optional[VMSpec] = None,
        media_dir: str = ".",
    ) -> int:
        """
        Create a VM, install Windows and SQL Server on it, optionally join the domain.

        Returns:
            vmid of the SQL Server VM
        """
        self.os_installer.resolve(os_name, edition)

        logger.info(f"🚀 Building SQL Server {name!r}")
        vmid = self.vms.ensure_vm(name, spec)
        self.os_installer.install(name, os_name, edition, media_dir)
        self.sql.install(name)
        if join_domain:
            self.join_domain(name)
        logger.info(f"✅ SQL Server {name!r} ready")
        return vmid

    def new_web_server(
        self,
        name: str,
        os_name: str = "Server 2016",
        edition: str = "ServerStandardCore",
        join_domain: bool = False,
        spec: Optional[VMSpec] = None,
        media_dir: str = ".",
    ) -> int:
        """Create a VM, install Windows and IIS on it, optionally join the domain."""
        self.os_installer.resolve(os_name, edition)

        logger.info(f"🚀 Building web server {name!r}")
        vmid = self.vms.ensure_vm(name, spec)
        self.os_installer.install(name, os_name, edition, media_dir)
        self.install_web_server(name)
        if join_domain:
            self.join_domain(name)
        logger.info(f"✅ Web server {name!r} ready")
        return vmid
