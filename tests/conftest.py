"""Shared test fixtures and configuration for powerlab tests."""

from contextlib import contextmanager
from unittest import mock

import pytest

from powerlab.config import LabConfig
from powerlab.guest_session import GuestSession
from powerlab.proxmox_api import ProxmoxClient

POWERLAB_ENV = [
    "POWERLAB_PROXMOX_HOST", "POWERLAB_API_TOKEN", "POWERLAB_VERIFY_SSL", "POWERLAB_NODE",
    "POWERLAB_VM_STORAGE", "POWERLAB_DISK_STORAGE", "POWERLAB_ISO_STORAGE",
    "POWERLAB_SWITCH_NAME", "POWERLAB_SWITCH_TYPE", "POWERLAB_EXTERNAL_ADAPTER",
    "POWERLAB_VM_MEMORY_MB", "POWERLAB_VM_CORES", "POWERLAB_VM_GENERATION",
    "POWERLAB_DISK_SIZE_GB", "POWERLAB_DISK_SIZING", "POWERLAB_ORPHAN_VMID",
    "POWERLAB_GUEST_USER", "POWERLAB_GUEST_PASSWORD",
    "POWERLAB_DOMAIN_NAME", "POWERLAB_DOMAIN_USER", "POWERLAB_DOMAIN_PASSWORD",
    "POWERLAB_SAFE_MODE_PASSWORD", "POWERLAB_DC_VM_NAME", "POWERLAB_SQL_ISO_PATH", "POWERLAB_SQL_ISO_URL",
    "POWERLAB_SQL_INSTANCE_NAME",
    "POWERLAB_SQL_TEMPLATE_PATH", "POWERLAB_SQL_SERVICE_ACCOUNT", "POWERLAB_SQL_SERVICE_PASSWORD",
    "POWERLAB_SQL_SYSADMINS", "POWERLAB_REMOTE_TEMP_DIR", "POWERLAB_CHECK_INSTALLER_EXIT_CODE",
    "POWERLAB_SSH_PORT", "POWERLAB_SSH_TIMEOUT", "POWERLAB_VM_START_TIMEOUT",
    "POWERLAB_OS_INSTALL_TIMEOUT", "POWERLAB_POLL_INTERVAL",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove POWERLAB_* variables and stop .env files from leaking in."""
    for name in POWERLAB_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("powerlab.config.load_dotenv", lambda: None)


@pytest.fixture
def mock_env(monkeypatch, clean_env):
    """Set up a complete test environment."""
    env_vars = {
        "POWERLAB_API_TOKEN": "root@pam!powerlab=secretvalue",
        "POWERLAB_PROXMOX_HOST": "pve.lab",
        "POWERLAB_NODE": "pve",
        "POWERLAB_SWITCH_NAME": "vmbr20",
        "POWERLAB_SWITCH_TYPE": "External",
        "POWERLAB_EXTERNAL_ADAPTER": "eno1",
        "POWERLAB_VM_MEMORY_MB": "2048",
        "POWERLAB_VM_GENERATION": "1",
        "POWERLAB_GUEST_PASSWORD": "P@ssw0rd",
        "POWERLAB_DOMAIN_PASSWORD": "D0main!",
        "POWERLAB_CHECK_INSTALLER_EXIT_CODE": "false",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars


@pytest.fixture
def lab_config():
    """Valid configuration with fast timeouts."""
    return LabConfig(
        api_token="root@pam!powerlab=secretvalue",
        guest_password="P@ssw0rd",
        domain_password="D0main!",
        safe_mode_password="S@feM0de",
        sql_service_password="Sql$vc1",
        vm_start_timeout=1,
        os_install_timeout=1,
        poll_interval=0,
    )


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch("powerlab.proxmox_api.ProxmoxAPI") as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.return_value.qemu.get.return_value = []
        proxmox.nodes.return_value.network.get.return_value = []
        proxmox.cluster.resources.get.return_value = []

        yield proxmox


@pytest.fixture
def mock_client():
    """Mock ProxmoxClient with an empty node."""
    client = mock.MagicMock(spec=ProxmoxClient)
    client.node = "pve"
    client.find_vm.return_value = None
    client.list_bridges.return_value = []
    client.list_volumes.return_value = []
    client.get_vm_config.return_value = {}
    client.get_next_available_vmid.return_value = 100
    client.vm_status.return_value = "stopped"
    client.agent_ping.return_value = False
    return client


@pytest.fixture
def mock_session():
    """Mock guest session."""
    session = mock.MagicMock(spec=GuestSession)
    session.host = "192.168.10.21"
    return session


@pytest.fixture
def session_factory(mock_session):
    """Session factory yielding mock_session and recording what was opened."""
    opened = []

    @contextmanager
    def factory(client, vm_name, credential, config):
        opened.append((vm_name, credential))
        try:
            yield mock_session
        finally:
            mock_session.close()

    factory.opened = opened
    return factory


@pytest.fixture
def mock_ssh_client():
    """Mock paramiko SSH client for testing remote operations."""
    with mock.patch("powerlab.guest_session.paramiko.SSHClient") as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value = b""
        stderr.read.return_value = b""
        stdout.channel.recv_exit_status.return_value = 0
        client.exec_command.return_value = (mock.MagicMock(), stdout, stderr)

        yield client
