"""Data models for the libvirt machine provisioner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, NamedTuple, Optional, Set

from provisioner.constants import (
    CLOUD_INIT_VOLUME_SUFFIX,
    DEFAULT_BACKING_IMAGE_FORMAT,
    DEFAULT_NETWORK,
    DEFAULT_STORAGE_POOL,
    DISK_VOLUME_SUFFIX,
    PROVIDER_ID_PREFIX,
)


class ResourceNames(NamedTuple):
    domain: str
    disk_volume: str
    cloud_init_volume: str


def derive_resource_names(name: str) -> ResourceNames:
    """Return the domain and volume names owned by machine ``name``.

    Create and destroy both derive names here; nothing else is recorded.
    """
    return ResourceNames(
        domain=name,
        disk_volume=f"{name}{DISK_VOLUME_SUFFIX}",
        cloud_init_volume=f"{name}{CLOUD_INIT_VOLUME_SUFFIX}",
    )


def provider_id(name: str) -> str:
    return f"{PROVIDER_ID_PREFIX}{name}"


@dataclass(frozen=True)
class MachineSpec:
    name: str
    cpu: int
    memory_mb: int
    disk_size_gb: int
    backing_image_path: str
    network: str = DEFAULT_NETWORK
    storage_pool: str = DEFAULT_STORAGE_POOL
    backing_image_format: str = DEFAULT_BACKING_IMAGE_FORMAT
    user_data: str = ""

    @property
    def resource_names(self) -> ResourceNames:
        return derive_resource_names(self.name)


@dataclass
class MachineObservation:
    exists: bool = False
    reconciled: bool = False
    ready: bool = False
    addresses: List[str] = field(default_factory=list)


class MachineAddress(NamedTuple):
    type: str
    address: str


class MachinePhase(str, Enum):
    AWAITING_DEPENDENCIES = "AwaitingDependencies"
    AWAITING_BOOTSTRAP = "AwaitingBootstrap"
    CREATING = "Creating"
    VERIFYING = "Verifying"
    READY = "Ready"
    DELETING = "Deleting"
    DELETED = "Deleted"
    PAUSED = "Paused"


@dataclass
class MachineStatus:
    """Observed fields published back to the external store."""

    ready: bool = False
    provisioned: bool = False
    addresses: List[MachineAddress] = field(default_factory=list)
    phase: Optional[MachinePhase] = None


@dataclass
class MachineRecord:
    """Desired-state snapshot of one machine as handed over by the scheduler.

    The reconciler mutates ``provider_id``, ``finalizers`` and ``status``; the
    caller is expected to persist those changes after each pass.
    """

    spec: MachineSpec
    namespace: str = "default"
    deletion_requested: bool = False
    paused: bool = False
    owner_machine: Optional[str] = None
    cluster: Optional[str] = None
    cluster_infrastructure_ref: Optional[str] = None
    cluster_provisioned: bool = False
    bootstrap_secret_name: Optional[str] = None
    provider_id: Optional[str] = None
    finalizers: Set[str] = field(default_factory=set)
    status: MachineStatus = field(default_factory=MachineStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.spec.name}"


@dataclass
class ClusterStatus:
    ready: bool = False
    provisioned: bool = False


@dataclass
class ClusterRecord:
    name: str
    namespace: str = "default"
    deletion_requested: bool = False
    paused: bool = False
    owner_cluster: Optional[str] = None
    finalizers: Set[str] = field(default_factory=set)
    status: ClusterStatus = field(default_factory=ClusterStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


class ReconcileResult(NamedTuple):
    """Requeue directive for the scheduler; ``None`` means wait for the next event."""

    requeue_after: Optional[float] = None
