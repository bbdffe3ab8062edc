"""Machine manifest loading and environment variable parsing."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from provisioner.constants import (
    DEFAULT_BACKING_IMAGE_FORMAT,
    DEFAULT_NETWORK,
    DEFAULT_STORAGE_POOL,
)
from provisioner.exceptions import ConfigurationError, ManagerError
from provisioner.models import MachineSpec
from provisioner.utils import get_env, parse_int, parse_int_env, validate_machine_name

_MANIFEST_KEYS = {
    "name",
    "network",
    "storagePool",
    "cpu",
    "memory",
    "diskSize",
    "backingImagePath",
    "backingImageFormat",
    "userData",
    "userDataFile",
}


def _read_user_data(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to read user data file {path}: {exc}") from exc


def _text(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    return text or fallback


def build_machine_spec(
    data: Dict[str, Any], base_dir: Optional[Path] = None, require_backing_image: bool = True
) -> MachineSpec:
    """Validate a manifest mapping and turn it into a ``MachineSpec``."""
    unknown = sorted(set(data) - _MANIFEST_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown machine manifest keys: {', '.join(unknown)}")

    name = _text(data.get("name"), "")
    try:
        validate_machine_name(name)
    except ManagerError as exc:
        raise ConfigurationError(str(exc)) from exc

    backing_image_path = _text(data.get("backingImagePath"), "")
    if not backing_image_path and require_backing_image:
        raise ConfigurationError(f"backingImagePath is required for machine '{name}'")

    if data.get("userData") is not None and data.get("userDataFile") is not None:
        raise ConfigurationError("Set only one of userData or userDataFile, not both.")
    user_data = str(data.get("userData") or "")
    if data.get("userDataFile") is not None:
        user_data_path = Path(str(data["userDataFile"])).expanduser()
        if not user_data_path.is_absolute() and base_dir is not None:
            user_data_path = base_dir / user_data_path
        user_data = _read_user_data(user_data_path)

    return MachineSpec(
        name=name,
        cpu=parse_int("cpu", data.get("cpu")),
        memory_mb=parse_int("memory", data.get("memory")),
        disk_size_gb=parse_int("diskSize", data.get("diskSize")),
        backing_image_path=backing_image_path,
        network=_text(data.get("network"), DEFAULT_NETWORK),
        storage_pool=_text(data.get("storagePool"), DEFAULT_STORAGE_POOL),
        backing_image_format=_text(data.get("backingImageFormat"), DEFAULT_BACKING_IMAGE_FORMAT),
        user_data=user_data,
    )


def load_machine_spec(config_path: Path, require_backing_image: bool = True) -> MachineSpec:
    if not config_path.exists():
        raise ConfigurationError(f"Machine manifest missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Machine manifest {config_path} must be a mapping")
    # Accept both a bare spec and a resource-shaped document with a ``spec`` block.
    if isinstance(data.get("spec"), dict):
        spec_data = dict(data["spec"])
        metadata = data.get("metadata") or {}
        if "name" not in spec_data and isinstance(metadata, dict) and metadata.get("name"):
            spec_data["name"] = metadata["name"]
        data = spec_data
    return build_machine_spec(data, base_dir=config_path.parent, require_backing_image=require_backing_image)


def spec_from_env(name: Optional[str] = None, require_backing_image: bool = True) -> MachineSpec:
    """Build a ``MachineSpec`` from environment variables.

    Commands that only address an existing machine (delete, status) pass
    ``require_backing_image=False``.
    """
    machine_name = (name or get_env("MACHINE_NAME") or "").strip()
    try:
        validate_machine_name(machine_name)
    except ManagerError as exc:
        raise ConfigurationError(f"MACHINE_NAME: {exc}") from exc

    backing_image_path = (get_env("BACKING_IMAGE") or "").strip()
    if not backing_image_path and require_backing_image:
        raise ConfigurationError("BACKING_IMAGE must be set to a base image path on the libvirt host")

    user_data = ""
    user_data_env = (get_env("CLOUD_INIT_USER_DATA") or "").strip()
    if user_data_env:
        user_data = _read_user_data(Path(user_data_env).expanduser())

    return MachineSpec(
        name=machine_name,
        cpu=parse_int_env("CPUS", "2"),
        memory_mb=parse_int_env("MEMORY", "2048"),
        disk_size_gb=parse_int_env("DISK_SIZE", "10"),
        backing_image_path=backing_image_path,
        network=_text(get_env("NETWORK"), DEFAULT_NETWORK),
        storage_pool=_text(get_env("STORAGE_POOL"), DEFAULT_STORAGE_POOL),
        backing_image_format=_text(get_env("BACKING_IMAGE_FORMAT"), DEFAULT_BACKING_IMAGE_FORMAT),
        user_data=user_data,
    )
