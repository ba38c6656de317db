"""Project-specific exception types."""

from __future__ import annotations


class MCPVMError(RuntimeError):
    """Base error for domain-level mcpvm failures."""


class PrerequisiteError(MCPVMError):
    """Raised when required host tooling or a hypervisor daemon is missing."""


class BaseImageMissingError(MCPVMError):
    """Raised when the base image for a version/architecture is not on disk."""


class ConfigError(MCPVMError):
    """Raised when the credentials file or settings file is unusable."""


class MissingSSHKeyError(MCPVMError):
    """Raised when no usable SSH public key can be found."""


class InvalidNameError(MCPVMError):
    """Raised for VM names or versions that violate the naming rules."""


class VMExistsError(MCPVMError):
    pass


class VMNotFoundError(MCPVMError):
    pass


class VMBusyError(MCPVMError):
    """Raised when another mcpvm run holds the lock for a VM name."""


class BackendError(MCPVMError):
    """Raised when a hypervisor tool reports a failure."""


class ProvisioningError(MCPVMError):
    """Raised when the cloud-init payload cannot be built."""


class PlaybookError(MCPVMError):
    pass
