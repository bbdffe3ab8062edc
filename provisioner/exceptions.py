"""Custom exceptions for the libvirt machine provisioner."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(ManagerError):
    """Missing or invalid configuration (connection URI, machine manifest)."""


class InvalidNameError(ManagerError):
    """Machine name cannot be used as a libvirt domain and guest hostname."""


class HypervisorConnectionError(ManagerError):
    """The hypervisor could not be reached."""


class CloudInitError(ManagerError):
    """The cloud-init seed image could not be built."""


class MachineCreateError(ManagerError):
    """A step of machine creation failed after validation."""


class UploadVerificationError(MachineCreateError):
    """Bytes read back from a storage volume differ from the bytes uploaded."""


class UnsupportedFormatError(ManagerError):
    """Bootstrap data is not in cloud-config format."""


class NotRunningError(ManagerError):
    """Addresses were requested for a domain that is not running."""


class MachineDestroyError(ManagerError):
    """The domain could not be powered off or undefined."""


class ReconcileError(ManagerError):
    """A reconciliation pass failed; ``requeue_after`` is a hint for the scheduler."""

    def __init__(self, message: str, requeue_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.requeue_after = requeue_after
