"""
Unattended SQL Server installation onto a lab VM.

The installer configuration and the installation ISO are copied into the
guest, the ISO is mounted there and setup.exe runs against the copied
ConfigurationFile.ini. Copied artifacts are always removed and the session
is always closed, whatever happened during the install. A guest that
already runs the configured instance is left alone.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from powerlab.answer_file import AnswerFileValues, render_answer_file, temporary_answer_file
from powerlab.config import Credential, LabConfig
from powerlab.errors import InstallerError
from powerlab.guest_session import GuestSession, SessionFactory, open_guest_session, remote_path
from powerlab.iso_manager import IsoManager
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

# setup.exe: 0 = success, 3010 = success, reboot required
REBOOT_REQUIRED_EXIT_CODE = 3010
SUCCESS_EXIT_CODES = (0, REBOOT_REQUIRED_EXIT_CODE)

INSTALLED_SCRIPT = r"""
$service = Get-Service -Name $PowerLabArgs.ServiceName -ErrorAction SilentlyContinue
@{ Installed = [bool]$service } | ConvertTo-Json -Compress
"""

INSTALL_SCRIPT = r"""
$image = Mount-DiskImage -ImagePath $PowerLabArgs.IsoPath -PassThru
try {
    $drive = ($image | Get-Volume).DriveLetter
    $setup = "$($drive):\setup.exe"
    $process = Start-Process -FilePath $setup -ArgumentList "/CONFIGURATIONFILE=`"$($PowerLabArgs.ConfigPath)`"" -Wait -PassThru -NoNewWindow
    @{ ExitCode = $process.ExitCode; DriveLetter = "$drive" } | ConvertTo-Json -Compress
} finally {
    Dismount-DiskImage -ImagePath $PowerLabArgs.IsoPath | Out-Null
}
"""

CLEANUP_SCRIPT = r"""
if (Test-Path -Path $PowerLabArgs.IsoPath) {
    $image = Get-DiskImage -ImagePath $PowerLabArgs.IsoPath
    if ($image.Attached) {
        Dismount-DiskImage -ImagePath $PowerLabArgs.IsoPath | Out-Null
    }
}
foreach ($path in $PowerLabArgs.Paths) {
    Remove-Item -Path $path -Force -ErrorAction SilentlyContinue
}
"""


def windows_path(path: str) -> str:
    return path.replace("/", "\\")


def service_name(instance_name: str) -> str:
    """Windows service name of a SQL Server instance."""
    if instance_name.upper() == "MSSQLSERVER":
        return "MSSQLSERVER"
    return f"MSSQL${instance_name}"


class SqlServerInstaller:
    """Dispatches a silent SQL Server install to a guest."""

    def __init__(
        self,
        client: ProxmoxClient,
        config: LabConfig,
        session_factory: SessionFactory = open_guest_session,
    ):
        self.client = client
        self.config = config
        self.session_factory = session_factory

    def answer_values(self) -> AnswerFileValues:
        return AnswerFileValues(
            service_account=self.config.sql_service_account,
            service_password=self.config.sql_service_password or "",
            sysadmin_accounts=self.config.sql_sysadmins,
        )

    def is_installed(self, session: GuestSession) -> bool:
        """Check whether the configured SQL Server instance already runs as a service."""
        result = session.run_script(INSTALLED_SCRIPT, {"ServiceName": service_name(self.config.sql_instance_name)})
        return bool(isinstance(result, dict) and result.get("Installed"))

    def install(self, vm_name: str, credential: Optional[Credential] = None) -> int:
        """
        Install SQL Server onto ``vm_name`` unless the instance already exists.

        Args:
            vm_name: Target VM
            credential: Guest credential, defaults to the local administrator

        Returns:
            Exit code reported by setup.exe, 0 when nothing had to be installed

        Raises:
            SessionError: If the session cannot be opened or a transfer/invoke fails
            InstallerError: If setup.exe fails and exit codes are checked
        """
        credential = credential or self.config.guest_credential
        template_path = self.config.sql_template_path

        with self.session_factory(self.client, vm_name, credential, self.config) as session:
            if self.is_installed(session):
                logger.info(
                    f"✅ SQL Server instance {self.config.sql_instance_name} already installed on {vm_name}, skipping"
                )
                return 0

            if not os.path.isfile(template_path):
                raise FileNotFoundError(f"SQL Server answer file template not found at {template_path}")
            iso_path = IsoManager(self.client, self.config).ensure_local(
                self.config.sql_iso_path, self.config.sql_iso_url
            )
            remote_iso = remote_path(self.config.remote_temp_dir, os.path.basename(iso_path))
            remote_config = remote_path(self.config.remote_temp_dir, "ConfigurationFile.ini")

            logger.info(f"🚀 Installing SQL Server on {vm_name}")
            try:
                answer_text = render_answer_file(template_path, self.answer_values())
                with temporary_answer_file(answer_text) as local_config:
                    session.put_file(local_config, remote_config)
                session.put_file(iso_path, remote_iso)

                result = session.run_script(
                    INSTALL_SCRIPT,
                    {"IsoPath": windows_path(remote_iso), "ConfigPath": windows_path(remote_config)},
                )
                exit_code = self._exit_code(result)
                if exit_code not in SUCCESS_EXIT_CODES and self.config.check_installer_exit_code:
                    raise InstallerError(f"SQL Server setup on {vm_name} exited with {exit_code}", exit_code)
            finally:
                self._cleanup(session, remote_iso, [remote_iso, remote_config])

        if exit_code == REBOOT_REQUIRED_EXIT_CODE:
            logger.warning(f"⚠️  SQL Server installed on {vm_name}, a reboot is required to finish setup")
        else:
            logger.info(f"✅ SQL Server installed on {vm_name} (setup exit code {exit_code})")
        return exit_code

    @staticmethod
    def _exit_code(result: Any) -> int:
        if isinstance(result, dict) and "ExitCode" in result:
            return int(result["ExitCode"])
        logger.warning(f"⚠️  setup.exe did not report an exit code: {result!r}")
        return 0

    def _cleanup(self, session: GuestSession, remote_iso: str, paths: List[str]) -> None:
        """Remove transferred artifacts; failures are logged so they never mask the install error."""
        arguments: Dict[str, Any] = {
            "IsoPath": windows_path(remote_iso),
            "Paths": [windows_path(p) for p in paths],
        }
        try:
            session.run_script(CLEANUP_SCRIPT, arguments)
            logger.info(f"🧹 Removed installer artifacts from {session.host}")
        except Exception as e:
            logger.warning(f"⚠️  Cleanup on {session.host} failed: {e}")
