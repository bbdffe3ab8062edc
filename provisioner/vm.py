"""VM lifecycle management: create, destroy and inspect one libvirt machine."""

from __future__ import annotations

from typing import Callable, ContextManager, List

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from provisioner.cloudinit import build_cloud_init_iso
from provisioner.constants import DEFAULT_STORAGE_POOL
from provisioner.descriptors import (
    render_cloud_init_volume_xml,
    render_disk_volume_xml,
    render_domain_xml,
)
from provisioner.exceptions import (
    MachineCreateError,
    MachineDestroyError,
    ManagerError,
    NotRunningError,
    UploadVerificationError,
)
from provisioner.hypervisor import connection
from provisioner.models import MachineSpec, derive_resource_names
from provisioner.utils import log, validate_machine_name

STREAM_CHUNK_SIZE = 256 * 1024

ConnectionFactory = Callable[[], ContextManager["libvirt.virConnect"]]


class MachineManager:
    """Hypervisor operations over machines identified by name.

    Every public method opens its own connection through ``connect`` and closes
    it before returning; nothing about the hypervisor is kept between calls.
    """

    def __init__(self, connect: ConnectionFactory = connection) -> None:
        self._connect = connect

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def exists(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                domain = conn.lookupByName(name)
                return domain.name() == name
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Error looking up domain {name}: {exc}")
        except ManagerError as exc:
            log("ERROR", f"Error opening libvirt connection: {exc}")
        return False

    def is_reconciled(self, spec: MachineSpec) -> bool:
        """Compare live vCPU count and maximum memory against ``spec``."""
        try:
            with self._connect() as conn:
                domain = conn.lookupByName(spec.name)
                _state, max_mem_kib, _mem_kib, vcpus, _cpu_time = domain.info()
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Unable to read domain info for {spec.name}: {exc}")
            return False
        except ManagerError as exc:
            log("ERROR", f"Error opening libvirt connection: {exc}")
            return False

        if vcpus != spec.cpu:
            log("DEBUG", f"VM {spec.name} is not reconciled; CPU mismatch (expected {spec.cpu}, actual {vcpus})")
            return False
        memory_mb = max_mem_kib // 1024
        if memory_mb != spec.memory_mb:
            log(
                "DEBUG",
                f"VM {spec.name} is not reconciled; memory mismatch "
                f"(expected {spec.memory_mb} MiB, actual {memory_mb} MiB)",
            )
            return False
        return True

    def is_ready(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                state, _reason = conn.lookupByName(name).state()
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Unable to read domain state for {name}: {exc}")
            return False
        except ManagerError as exc:
            log("ERROR", f"Error opening libvirt connection: {exc}")
            return False
        log("DEBUG", f"Domain {name} state: {state}")
        return state == libvirt.VIR_DOMAIN_RUNNING

    def get_ip_addresses(self, name: str) -> List[str]:
        """Return DHCP lease addresses of a running domain, in reported order.

        An empty list means no lease has been handed out yet.
        """
        with self._connect() as conn:
            try:
                domain = conn.lookupByName(name)
                state, _reason = domain.state()
            except libvirt.libvirtError as exc:
                raise ManagerError(f"failed to read state of domain '{name}': {exc}") from exc
            if state != libvirt.VIR_DOMAIN_RUNNING:
                raise NotRunningError(f"VM {name} is not running")
            try:
                interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
            except libvirt.libvirtError as exc:
                log("DEBUG", f"No interface addresses for {name} yet: {exc}")
                return []

        addresses: List[str] = []
        for iface_name, data in (interfaces or {}).items():
            if not iface_name:
                continue
            for addr in data.get("addrs") or []:
                addresses.append(addr["addr"])
        return addresses

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, spec: MachineSpec) -> None:
        """Create the cloud-init volume, the disk overlay and the domain, then start it.

        Nothing is rolled back on failure. Leftover volumes from an earlier
        attempt are removed before being recreated.
        """
        validate_machine_name(spec.name)
        names = spec.resource_names
        log("DEBUG", f"Creating VM {spec.name}")

        with self._connect() as conn:
            try:
                pool = conn.storagePoolLookupByName(spec.storage_pool)
            except libvirt.libvirtError as exc:
                raise MachineCreateError(f"failed to get storage pool '{spec.storage_pool}': {exc}") from exc

            iso_path = self._create_cloud_init_volume(conn, pool, spec)
            disk_path = self._create_disk_volume(pool, spec)

            domain_xml = render_domain_xml(spec, disk_path, iso_path)
            log("DEBUG", f"Domain XML for {spec.name}:\n{domain_xml}")
            try:
                domain = conn.defineXML(domain_xml)
                if domain is None:
                    raise MachineCreateError(f"failed to define domain '{names.domain}'")
                domain.create()
            except libvirt.libvirtError as exc:
                raise MachineCreateError(f"failed to define or start domain '{names.domain}': {exc}") from exc

        log("DEBUG", f"VM {spec.name} defined and started")

    def destroy(self, name: str, storage_pool: str = DEFAULT_STORAGE_POOL) -> None:
        """Power off and undefine the domain, then delete its volumes.

        A missing domain is not an error. Volume cleanup is best-effort.
        """
        names = derive_resource_names(name)
        log("DEBUG", f"Destroying VM {name}")

        with self._connect() as conn:
            try:
                domain = conn.lookupByName(names.domain)
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Domain {names.domain} not found; nothing to destroy ({exc})")
                return

            try:
                if domain.isActive():
                    log("DEBUG", f"Stopping VM {name}")
                    domain.destroy()
                log("DEBUG", f"Undefining VM {name}")
                domain.undefine()
            except libvirt.libvirtError as exc:
                raise MachineDestroyError(f"failed to stop or undefine domain '{names.domain}': {exc}") from exc

            try:
                pool = conn.storagePoolLookupByName(storage_pool)
            except libvirt.libvirtError as exc:
                log("WARN", f"Storage pool '{storage_pool}' unavailable; volumes of {name} not removed: {exc}")
                return

            self._refresh_pool(pool, storage_pool)
            for volume_name in (names.disk_volume, names.cloud_init_volume):
                try:
                    volume = pool.storageVolLookupByName(volume_name)
                except libvirt.libvirtError:
                    continue
                log("DEBUG", f"Deleting volume {volume_name} from pool {storage_pool}")
                try:
                    volume.delete(0)
                except libvirt.libvirtError as exc:
                    log("WARN", f"Failed to delete volume {volume_name}: {exc}")
            self._refresh_pool(pool, storage_pool)

        log("DEBUG", f"VM {name} destroyed and removed")

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    @staticmethod
    def _refresh_pool(pool, pool_name: str) -> None:
        try:
            pool.refresh(0)
        except libvirt.libvirtError as exc:
            log("WARN", f"Failed to refresh storage pool '{pool_name}': {exc}")

    def _remove_stale_volume(self, pool, volume_name: str) -> None:
        try:
            stale = pool.storageVolLookupByName(volume_name)
        except libvirt.libvirtError:
            return
        log("WARN", f"Removing leftover volume {volume_name} from an earlier attempt")
        try:
            stale.delete(0)
        except libvirt.libvirtError as exc:
            raise MachineCreateError(f"failed to remove leftover volume '{volume_name}': {exc}") from exc

    def _create_cloud_init_volume(self, conn, pool, spec: MachineSpec) -> str:
        volume_name = spec.resource_names.cloud_init_volume
        data = build_cloud_init_iso(spec.name, spec.user_data)

        self._remove_stale_volume(pool, volume_name)
        try:
            volume = pool.createXML(render_cloud_init_volume_xml(volume_name, len(data)), 0)
        except libvirt.libvirtError as exc:
            raise MachineCreateError(f"failed to create cloud-init storage volume: {exc}") from exc

        try:
            upload_volume(conn, volume, data)
            readback = download_volume(conn, volume)
        except libvirt.libvirtError as exc:
            raise MachineCreateError(f"failed to transfer cloud-init ISO to volume {volume_name}: {exc}") from exc
        if readback != data:
            raise UploadVerificationError(f"storage volume {volume_name} content does not match uploaded data")

        log("DEBUG", f"Cloud-init volume {volume_name} created in pool {spec.storage_pool}")
        try:
            return volume.path()
        except libvirt.libvirtError as exc:
            raise MachineCreateError(f"failed to get cloud-init ISO volume path: {exc}") from exc

    def _create_disk_volume(self, pool, spec: MachineSpec) -> str:
        volume_name = spec.resource_names.disk_volume
        self._remove_stale_volume(pool, volume_name)
        try:
            volume = pool.createXML(render_disk_volume_xml(spec), 0)
            path = volume.path()
        except libvirt.libvirtError as exc:
            raise MachineCreateError(f"failed to create disk volume {volume_name}: {exc}") from exc
        log("DEBUG", f"Disk volume {volume_name} created in pool {spec.storage_pool}")
        return path


def upload_volume(conn, volume, data: bytes) -> None:
    stream = conn.newStream(0)
    try:
        volume.upload(stream, 0, len(data), 0)
        offset = 0
        while offset < len(data):
            sent = stream.send(data[offset : offset + STREAM_CHUNK_SIZE])
            if sent < 0:
                raise libvirt.libvirtError("stream send failed")
            offset += sent
        stream.finish()
    except libvirt.libvirtError:
        _abort_stream(stream)
        raise


def download_volume(conn, volume) -> bytes:
    stream = conn.newStream(0)
    chunks: List[bytes] = []
    try:
        volume.download(stream, 0, 0, 0)
        while True:
            chunk = stream.recv(STREAM_CHUNK_SIZE)
            if isinstance(chunk, int):
                raise libvirt.libvirtError("stream receive failed")
            if not chunk:
                break
            chunks.append(chunk)
        stream.finish()
    except libvirt.libvirtError:
        _abort_stream(stream)
        raise
    return b"".join(chunks)


def _abort_stream(stream) -> None:
    try:
        stream.abort()
    except libvirt.libvirtError as exc:
        log("DEBUG", f"Stream abort failed: {exc}")
