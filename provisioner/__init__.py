"""libvirt machine provisioner package."""

__all__ = [
    "bootstrap",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "descriptors",
    "exceptions",
    "hypervisor",
    "models",
    "network",
    "reconciler",
    "utils",
    "vm",
]
