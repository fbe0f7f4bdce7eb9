"""Tests for config module."""

import pytest

from powerlab.config import Credential, LabConfig, OsImage
from powerlab.errors import ConfigurationError


def test_from_environment_defaults(clean_env):
    """Test defaults when no POWERLAB_* variables are set."""
    config = LabConfig.from_environment()

    assert config.api_token is None
    assert config.node == "pve"
    assert config.switch_name == "vmbr10"
    assert config.switch_type == "internal"
    assert config.memory_mb == 4096
    assert config.generation == 2
    assert config.disk_sizing == "dynamic"
    assert config.check_installer_exit_code is True
    assert config.orphan_vmid == 99999
    assert config.sql_instance_name == "MSSQLSERVER"
    assert "Server 2016" in config.os_images


def test_from_environment_reads_variables(mock_env):
    """Test environment variables override defaults."""
    config = LabConfig.from_environment()

    assert config.api_token == "root@pam!powerlab=secretvalue"
    assert config.proxmox_host == "pve.lab"
    assert config.switch_name == "vmbr20"
    assert config.switch_type == "external"
    assert config.external_adapter == "eno1"
    assert config.memory_mb == 2048
    assert config.generation == 1
    assert config.check_installer_exit_code is False


def test_credentials(lab_config):
    """Test credential properties."""
    assert lab_config.guest_credential == Credential("Administrator", "P@ssw0rd")
    assert lab_config.domain_credential == Credential("POWERLAB\\Administrator", "D0main!")


def test_credential_repr_hides_password():
    """Test Credential repr never shows the password."""
    assert "hunter2" not in repr(Credential("admin", "hunter2"))


def test_validate_accepts_valid_config(lab_config):
    """Test validate passes for a complete config."""
    lab_config.validate()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"api_token": None}, "API_TOKEN"),
        ({"api_token": "no-separators"}, "API token"),
        ({"memory_mb": 256}, "memory"),
        ({"generation": 3}, "generation"),
        ({"switch_type": "private"}, "switch type"),
        ({"switch_type": "external", "external_adapter": None}, "EXTERNAL_ADAPTER"),
        ({"disk_sizing": "sparse"}, "sizing"),
    ],
)
def test_validate_rejects_invalid_settings(lab_config, changes, message):
    """Test validate raises ConfigurationError for invalid settings."""
    for key, value in changes.items():
        setattr(lab_config, key, value)

    with pytest.raises(ConfigurationError, match=message):
        lab_config.validate()


def test_from_file_overlays_environment(mock_env, tmp_path):
    """Test YAML lab file values override environment values."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text(
        "switch_name: vmbr30\n"
        "memory_mb: 8192\n"
        "os_images:\n"
        "  Server 2022:\n"
        "    iso: server2022.iso\n"
        "    editions:\n"
        "      ServerStandard: unattend-2022.iso\n"
    )

    config = LabConfig.from_file(lab_file)

    assert config.switch_name == "vmbr30"
    assert config.memory_mb == 8192
    assert config.api_token == "root@pam!powerlab=secretvalue"
    assert config.os_images == {
        "Server 2022": OsImage(iso="server2022.iso", editions={"ServerStandard": "unattend-2022.iso"})
    }


def test_from_file_rejects_unknown_keys(clean_env, tmp_path):
    """Test unknown settings in the lab file are rejected."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text("switchname: vmbr30\n")

    with pytest.raises(ConfigurationError, match="switchname"):
        LabConfig.from_file(lab_file)


def test_from_file_missing(clean_env, tmp_path):
    """Test a missing lab file raises ConfigurationError."""
    with pytest.raises(ConfigurationError, match="not found"):
        LabConfig.from_file(tmp_path / "missing.yaml")


def test_from_file_requires_mapping(clean_env, tmp_path):
    """Test a lab file that is not a mapping is rejected."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text("- vmbr30\n")

    with pytest.raises(ConfigurationError, match="mapping"):
        LabConfig.from_file(lab_file)


def test_to_dict_masks_secrets(lab_config):
    """Test to_dict hides every secret."""
    data = lab_config.to_dict()

    assert data["api_token"] == "********"
    assert data["guest_password"] == "********"
    assert data["sql_service_password"] == "********"
    assert data["node"] == "pve"
    assert data["os_images"]["Server 2016"]["editions"] == sorted(
        lab_config.os_images["Server 2016"].editions
    )


def test_from_file_invalid_yaml(clean_env, tmp_path):
    """Test YAML syntax errors are reported as ConfigurationError."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text("switch_name: [vmbr30\n")

    with pytest.raises(ConfigurationError, match="not valid YAML"):
        LabConfig.from_file(lab_file)


@pytest.mark.parametrize(
    "os_images",
    [
        "os_images: server2022.iso\n",
        "os_images:\n  Server 2022: server2022.iso\n",
        "os_images:\n  Server 2022:\n    editions:\n      ServerStandard: unattend.iso\n",
        "os_images:\n  Server 2022:\n    iso: server2022.iso\n    editions: [ServerStandard]\n",
    ],
)
def test_from_file_rejects_malformed_os_images(clean_env, tmp_path, os_images):
    """Test OS catalog entries need a mapping with an iso value."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text(os_images)

    with pytest.raises(ConfigurationError, match="os_images|Editions"):
        LabConfig.from_file(lab_file)


def test_from_file_coerces_setting_types(clean_env, tmp_path):
    """Test quoted numbers and booleans are converted to the setting's type."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text(
        'memory_mb: "8192"\n'
        'verify_ssl: "yes"\n'
        "node: 1234\n"
        "switch_type: Internal\n"
        "external_adapter: null\n"
    )

    config = LabConfig.from_file(lab_file)

    assert config.memory_mb == 8192
    assert config.verify_ssl is True
    assert config.node == "1234"
    assert config.switch_type == "internal"
    assert config.external_adapter is None


@pytest.mark.parametrize(
    "setting",
    [
        "memory_mb: lots\n",
        "memory_mb: true\n",
        "generation: [2]\n",
        "verify_ssl: maybe\n",
        "switch_name: null\n",
        "switch_name: {name: vmbr10}\n",
    ],
)
def test_from_file_rejects_wrong_setting_types(clean_env, tmp_path, setting):
    """Test values that cannot become the setting's type are rejected."""
    lab_file = tmp_path / "lab.yaml"
    lab_file.write_text(setting)

    with pytest.raises(ConfigurationError, match="Lab setting"):
        LabConfig.from_file(lab_file)


@pytest.mark.parametrize("orphan_vmid", [100, 9999, 42])
def test_validate_rejects_orphan_vmid_in_automatic_range(lab_config, orphan_vmid):
    """Test the orphan VMID must lie above the IDs handed out to new VMs."""
    lab_config.orphan_vmid = orphan_vmid

    with pytest.raises(ConfigurationError, match="orphan VMID"):
        lab_config.validate()
