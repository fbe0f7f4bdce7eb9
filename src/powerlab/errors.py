"""Exceptions raised by PowerLab provisioning."""


class PowerLabError(Exception):
    """Base exception for PowerLab errors."""

    pass


class ConfigurationError(PowerLabError):
    """Raised when the lab configuration is invalid."""

    pass


class ProvisioningError(PowerLabError):
    """Raised when the virtualization platform refuses to create a resource."""

    pass


class InstallerError(ProvisioningError):
    """Raised when a remote installer exits with a non-zero status."""

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code


class SessionError(PowerLabError):
    """Raised when opening, transferring over or invoking a remote session fails."""

    pass


class UnsupportedInputError(PowerLabError):
    """Raised for an unrecognized operating system or edition selector."""

    pass


class NotFoundWarning(UserWarning):
    """Emitted when a referenced VM or resource is missing but work can continue."""

    pass
