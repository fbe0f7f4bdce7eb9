"""Tests for sql_installer module."""

from unittest import mock

import pytest

from powerlab.errors import InstallerError, SessionError
from powerlab.sql_installer import (
    CLEANUP_SCRIPT,
    INSTALL_SCRIPT,
    INSTALLED_SCRIPT,
    SqlServerInstaller,
    service_name,
)

TEMPLATE = 'SQLSVCACCOUNT=""\r\nSQLSVCPASSWORD=""\r\nSQLSYSADMINACCOUNTS=""\r\n'
NOT_INSTALLED = {"Installed": False}


@pytest.fixture
def installer(mock_client, lab_config, session_factory, tmp_path):
    template = tmp_path / "ConfigurationFile.ini"
    template.write_bytes(TEMPLATE.encode("utf-8"))
    iso = tmp_path / "SQLServer2016.iso"
    iso.write_bytes(b"iso")
    lab_config.sql_template_path = str(template)
    lab_config.sql_iso_path = str(iso)
    return SqlServerInstaller(mock_client, lab_config, session_factory)


def scripts_run(session):
    return [c[0][0] for c in session.run_script.call_args_list]


@pytest.mark.parametrize(
    "instance, expected",
    [("MSSQLSERVER", "MSSQLSERVER"), ("mssqlserver", "MSSQLSERVER"), ("LAB", "MSSQL$LAB")],
)
def test_service_name(instance, expected):
    assert service_name(instance) == expected


def test_install_success(installer, mock_session, session_factory, tmp_path):
    """Test files are copied, setup runs and artifacts are cleaned up once."""
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 0, "DriveLetter": "E"}, None]

    assert installer.install("SQLSRV") == 0

    assert session_factory.opened[0][0] == "SQLSRV"
    assert mock_session.put_file.call_args_list[1] == mock.call(
        str(tmp_path / "SQLServer2016.iso"), "C:/SQLServer2016.iso"
    )
    assert mock_session.put_file.call_args_list[0][0][1] == "C:/ConfigurationFile.ini"
    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, INSTALL_SCRIPT, CLEANUP_SCRIPT]
    assert mock_session.run_script.call_args_list[0][0][1] == {"ServiceName": "MSSQLSERVER"}
    install_args = mock_session.run_script.call_args_list[1][0][1]
    assert install_args == {"IsoPath": "C:\\SQLServer2016.iso", "ConfigPath": "C:\\ConfigurationFile.ini"}
    cleanup_args = mock_session.run_script.call_args_list[2][0][1]
    assert cleanup_args["Paths"] == ["C:\\SQLServer2016.iso", "C:\\ConfigurationFile.ini"]
    mock_session.close.assert_called_once()


def test_install_twice_installs_once(installer, mock_session, tmp_path):
    """Test a second install finds the instance and copies nothing."""
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 0}, None, {"Installed": True}]

    assert installer.install("SQLSRV") == 0
    assert installer.install("SQLSRV") == 0

    assert scripts_run(mock_session).count(INSTALL_SCRIPT) == 1
    iso_copies = [c for c in mock_session.put_file.call_args_list if c[0][1] == "C:/SQLServer2016.iso"]
    assert len(iso_copies) == 1


def test_install_skips_existing_instance_without_media(installer, mock_session, lab_config, tmp_path):
    """Test an installed instance needs neither the template nor the ISO."""
    lab_config.sql_template_path = str(tmp_path / "missing.ini")
    lab_config.sql_iso_path = str(tmp_path / "missing.iso")
    mock_session.run_script.return_value = {"Installed": True}

    assert installer.install("SQLSRV") == 0

    assert scripts_run(mock_session) == [INSTALLED_SCRIPT]
    mock_session.put_file.assert_not_called()


def test_install_named_instance_checks_its_service(installer, mock_session, lab_config):
    lab_config.sql_instance_name = "LAB"
    mock_session.run_script.return_value = {"Installed": True}

    installer.install("SQLSRV")

    mock_session.run_script.assert_called_once_with(INSTALLED_SCRIPT, {"ServiceName": "MSSQL$LAB"})


def test_install_transfers_rendered_answer_file(installer, mock_session):
    """Test the copied answer file carries the configured account values."""
    transferred = {}

    def capture(local_path, remote):
        with open(local_path, "rb") as f:
            transferred[remote] = f.read()

    mock_session.put_file.side_effect = capture
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 0}, None]

    installer.install("SQLSRV")

    assert transferred["C:/ConfigurationFile.ini"] == (
        b'SQLSVCACCOUNT="PowerLabUser"\r\nSQLSVCPASSWORD="Sql$vc1"\r\n'
        b'SQLSYSADMINACCOUNTS="POWERLAB\\Domain Admins"\r\n'
    )


def test_install_nonzero_exit_raises(installer, mock_session):
    """Test a failing setup.exe surfaces as InstallerError after cleanup."""
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 2068052377}, None]

    with pytest.raises(InstallerError) as excinfo:
        installer.install("SQLSRV")

    assert excinfo.value.exit_code == 2068052377
    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, INSTALL_SCRIPT, CLEANUP_SCRIPT]
    mock_session.close.assert_called_once()


def test_install_reboot_required_is_success(installer, mock_session, lab_config):
    """Test exit code 3010 counts as success with exit codes checked."""
    assert lab_config.check_installer_exit_code is True
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 3010}, None]

    assert installer.install("SQLSRV") == 3010

    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, INSTALL_SCRIPT, CLEANUP_SCRIPT]


def test_install_exit_code_not_checked(installer, mock_session, lab_config):
    """Test a failing exit code is only returned when checking is disabled."""
    lab_config.check_installer_exit_code = False
    mock_session.run_script.side_effect = [NOT_INSTALLED, {"ExitCode": 1603}, None]

    assert installer.install("SQLSRV") == 1603


def test_install_transfer_failure_still_cleans_up(installer, mock_session):
    """Test a failed copy runs cleanup once and closes the session."""
    mock_session.run_script.side_effect = [NOT_INSTALLED, None]
    mock_session.put_file.side_effect = [None, SessionError("disk full")]

    with pytest.raises(SessionError, match="disk full"):
        installer.install("SQLSRV")

    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, CLEANUP_SCRIPT]
    mock_session.close.assert_called_once()


def test_cleanup_failure_does_not_mask_error(installer, mock_session):
    """Test a failing install and cleanup run cleanup once and keep the install error."""
    mock_session.run_script.side_effect = [
        NOT_INSTALLED,
        SessionError("setup crashed"),
        SessionError("cleanup failed"),
    ]

    with pytest.raises(SessionError, match="setup crashed"):
        installer.install("SQLSRV")

    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, INSTALL_SCRIPT, CLEANUP_SCRIPT]
    mock_session.close.assert_called_once()


def test_unexpected_cleanup_error_does_not_mask_error(installer, mock_session):
    """Test a cleanup failure of any kind leaves the install error in place."""
    mock_session.run_script.side_effect = [
        NOT_INSTALLED,
        SessionError("setup crashed"),
        RuntimeError("channel closed unexpectedly"),
    ]

    with pytest.raises(SessionError, match="setup crashed"):
        installer.install("SQLSRV")

    assert scripts_run(mock_session) == [INSTALLED_SCRIPT, INSTALL_SCRIPT, CLEANUP_SCRIPT]


def test_install_missing_template(installer, mock_session, lab_config, tmp_path):
    """Test a missing template fails before anything is copied."""
    lab_config.sql_template_path = str(tmp_path / "missing.ini")
    mock_session.run_script.return_value = NOT_INSTALLED

    with pytest.raises(FileNotFoundError):
        installer.install("SQLSRV")

    mock_session.put_file.assert_not_called()
    mock_session.close.assert_called_once()
