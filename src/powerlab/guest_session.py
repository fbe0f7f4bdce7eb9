"""
Remote execution channel into Windows lab guests.

Guests run the OpenSSH server (enabled by the answer medium). A session
authenticates with a username/password credential, copies files over SFTP
and runs PowerShell scripts whose arguments are marshalled as JSON. A
script reports its result by writing one JSON document as its last line.
"""

import base64
import json
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, ContextManager, Dict, Iterable, Iterator, Optional, Tuple

import paramiko

from powerlab.config import Credential, LabConfig
from powerlab.errors import SessionError
from powerlab.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

SCRIPT_DIR = "C:/Windows/Temp"

_PRELUDE = """$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
$PowerLabArgs = [Text.Encoding]::UTF8.GetString([Convert]::FromBase64String('{payload}')) | ConvertFrom-Json
"""


def remote_path(directory: str, name: str) -> str:
    """Join a Windows directory and file name using forward slashes (valid for SFTP and PowerShell)."""
    directory = directory.replace("\\", "/").rstrip("/")
    return f"{directory}/{name}"


def build_script(script: str, arguments: Optional[Dict[str, Any]] = None) -> str:
    """Prefix ``script`` with the prelude that exposes ``arguments`` as $PowerLabArgs."""
    payload = base64.b64encode(json.dumps(arguments or {}).encode("utf-8")).decode("ascii")
    return _PRELUDE.format(payload=payload) + script


def parse_output(output: str) -> Any:
    """Parse the JSON document on the last non-empty line of script output."""
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return None
    try:
        return json.loads(lines[-1])
    except json.JSONDecodeError:
        logger.debug(f"Script output is not JSON: {lines[-1]!r}")
        return lines[-1]


class GuestSession:
    """SSH/SFTP session to a Windows guest."""

    def __init__(self, host: str, credential: Credential, port: int = 22, timeout: int = 30):
        self.host = host
        self.credential = credential
        self.port = port
        self.timeout = timeout
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def __enter__(self) -> "GuestSession":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._ssh is not None

    def open(self) -> None:
        """Connect and authenticate.

        Raises:
            SessionError: If the guest is unreachable or rejects the credential
        """
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=self.host,
                port=self.port,
                username=self.credential.username,
                password=self.credential.password,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            ssh.close()
            raise SessionError(f"{self.host} rejected credentials for {self.credential.username}") from e
        except (paramiko.SSHException, OSError) as e:
            ssh.close()
            raise SessionError(f"Cannot reach {self.host}:{self.port}: {e}") from e

        logger.debug(f"Opened session to {self.host} as {self.credential.username}")
        self._ssh = ssh

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None
            logger.debug(f"Closed session to {self.host}")

    def _client(self) -> paramiko.SSHClient:
        if self._ssh is None:
            raise SessionError(f"Session to {self.host} is not open")
        return self._ssh

    def _sftp_client(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            try:
                self._sftp = self._client().open_sftp()
            except (paramiko.SSHException, OSError) as e:
                raise SessionError(f"Cannot open SFTP channel to {self.host}: {e}") from e
        return self._sftp

    def put_file(self, local_path: str, remote: str) -> None:
        """Copy a local file into the guest."""
        logger.info(f"📤 Copying {local_path} → {self.host}:{remote}")
        try:
            self._sftp_client().put(local_path, remote)
        except (paramiko.SSHException, OSError) as e:
            raise SessionError(f"Copying {local_path} to {self.host}:{remote} failed: {e}") from e

    def write_file(self, remote: str, content: str) -> None:
        """Write text (UTF-8 with BOM, as Windows PowerShell expects) to a guest file."""
        try:
            with self._sftp_client().open(remote, "wb") as f:
                f.write(b"\xef\xbb\xbf" + content.encode("utf-8"))
        except (paramiko.SSHException, OSError) as e:
            raise SessionError(f"Writing {self.host}:{remote} failed: {e}") from e

    def remove_files(self, paths: Iterable[str]) -> None:
        """Delete guest files; every path is attempted before failures are reported."""
        failures = []
        for path in paths:
            try:
                self._sftp_client().remove(path)
                logger.debug(f"Removed {self.host}:{path}")
            except FileNotFoundError:
                logger.debug(f"{self.host}:{path} already gone")
            except (paramiko.SSHException, OSError) as e:
                failures.append(f"{path} ({e})")
        if failures:
            raise SessionError(f"Could not remove from {self.host}: {', '.join(failures)}")

    def exec_command(self, command: str) -> Tuple[int, str, str]:
        """Run a command and return (exit status, stdout, stderr)."""
        try:
            _stdin, stdout, stderr = self._client().exec_command(command)
            out = stdout.read().decode(errors="replace").strip()
            err = stderr.read().decode(errors="replace").strip()
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise SessionError(f"Command on {self.host} failed: {e}") from e
        return status, out, err

    def run_script(self, script: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run a PowerShell script in the guest as the session user.

        Args:
            script: Script body; arguments are available as $PowerLabArgs
            arguments: JSON-serializable values passed to the script

        Returns:
            The JSON document the script printed last, or None

        Raises:
            SessionError: If the script cannot be run or exits non-zero
        """
        path = remote_path(SCRIPT_DIR, f"powerlab-{uuid.uuid4().hex}.ps1")
        self.write_file(path, build_script(script, arguments))
        command = f'powershell.exe -NoProfile -NonInteractive -ExecutionPolicy Bypass -File "{path}"'
        try:
            status, out, err = self.exec_command(command)
        finally:
            try:
                self.remove_files([path])
            except SessionError as e:
                logger.warning(f"⚠️  {e}")

        if status != 0:
            raise SessionError(f"Remote script on {self.host} exited with {status}: {err or out}")
        return parse_output(out)


def resolve_guest_address(client: ProxmoxClient, vm_name: str) -> str:
    """Ask the guest agent of ``vm_name`` for its address."""
    vmid = client.find_vm(vm_name)
    if vmid is None:
        raise SessionError(f"VM {vm_name!r} not found on {client.node!r}")

    addresses = client.guest_addresses(vmid)
    if not addresses:
        raise SessionError(f"Guest agent of {vm_name!r} (vmid={vmid}) reports no address")
    return addresses[0]


@contextmanager
def open_guest_session(
    client: ProxmoxClient, vm_name: str, credential: Credential, config: LabConfig
) -> Iterator[GuestSession]:
    """Open a session to a VM by name and always close it afterwards."""
    host = resolve_guest_address(client, vm_name)
    logger.info(f"🔌 Opening session to {vm_name} ({host}) as {credential.username}")
    session = GuestSession(host, credential, port=config.ssh_port, timeout=config.ssh_timeout)
    session.open()
    try:
        yield session
    finally:
        session.close()


SessionFactory = Callable[[ProxmoxClient, str, Credential, LabConfig], ContextManager[GuestSession]]
