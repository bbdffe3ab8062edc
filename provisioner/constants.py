"""Global constants and environment configuration for the libvirt machine provisioner."""

from __future__ import annotations

import os

# Hypervisor endpoint: primary variable first, then the libvirt-wide default.
LIBVIRT_URI_ENV = "LIBVIRT_URI"
LIBVIRT_FALLBACK_URI_ENV = "LIBVIRT_DEFAULT_URI"

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# DNS label limit; the name is also the guest hostname.
MAX_NAME_LENGTH = 63

DEFAULT_NETWORK = "default"
DEFAULT_STORAGE_POOL = "default"
DEFAULT_BACKING_IMAGE_FORMAT = "qcow2"

DISK_VOLUME_SUFFIX = ".qcow2"
CLOUD_INIT_VOLUME_SUFFIX = "-cloudinit.iso"

CLOUD_INIT_VOLUME_LABEL = "cidata"
CLOUD_INIT_FORMAT = "cloud-config"
# The only supported ISO tool; it honours SOURCE_DATE_EPOCH.
ISO_TOOL = "xorriso"
# Timestamp pinned on seed image files and SOURCE_DATE_EPOCH.
ISO_SOURCE_DATE_EPOCH = 946684800

PROVIDER_ID_PREFIX = "libvirt:///"
MACHINE_FINALIZER = "libvirtmachine.infrastructure.cluster.x-k8s.io"
CLUSTER_FINALIZER = "libvirtcluster.infrastructure.cluster.x-k8s.io"
ADDRESS_TYPE_EXTERNAL_IP = "ExternalIP"

# Requeue intervals in seconds.
REQUEUE_PAUSED = 30.0
REQUEUE_DRIFT = 30.0
REQUEUE_SHORT = 10.0
REQUEUE_PERIODIC = 300.0
