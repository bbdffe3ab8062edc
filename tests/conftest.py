"""Shared test fixtures and an in-memory libvirt host."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, List, Optional
from unittest.mock import patch
from xml.etree.ElementTree import fromstring

import libvirt
import pytest

from provisioner.models import MachineSpec
from provisioner.vm import MachineManager


def _error(message: str) -> libvirt.libvirtError:
    return libvirt.libvirtError(message)


class FakeStream:
    def __init__(self) -> None:
        self.sent = bytearray()
        self.volume: Optional["FakeVolume"] = None
        self.pending = b""
        self.finished = False
        self.aborted = False

    def send(self, data: bytes) -> int:
        self.sent.extend(data)
        return len(data)

    def recv(self, nbytes: int) -> bytes:
        chunk, self.pending = self.pending[:nbytes], self.pending[nbytes:]
        return chunk

    def finish(self) -> None:
        if self.volume is not None:
            self.volume.data = bytes(self.sent)
        self.finished = True

    def abort(self) -> None:
        self.aborted = True


class FakeVolume:
    def __init__(self, pool: "FakePool", xml: str) -> None:
        root = fromstring(xml)
        self.pool = pool
        self.xml = xml
        self.name = root.findtext("name")
        self.capacity = root.findtext("capacity")
        self.capacity_unit = root.find("capacity").get("unit")
        self.target_format = root.find("target/format").get("type")
        backing = root.find("backingStore")
        self.backing_path = backing.findtext("path") if backing is not None else None
        self.data = b""
        self.corrupt_downloads = pool.corrupt_downloads
        self.fail_delete = False

    def path(self) -> str:
        return f"/var/lib/libvirt/images/{self.name}"

    def upload(self, stream: FakeStream, offset: int, length: int, flags: int) -> None:
        stream.volume = self

    def download(self, stream: FakeStream, offset: int, length: int, flags: int) -> None:
        data = self.data
        if self.corrupt_downloads and data:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        stream.pending = data

    def delete(self, flags: int) -> None:
        if self.fail_delete:
            raise _error(f"cannot delete volume {self.name}")
        self.pool.volumes.pop(self.name, None)


class FakePool:
    def __init__(self, name: str) -> None:
        self.name = name
        self.volumes: Dict[str, FakeVolume] = {}
        self.refresh_count = 0
        self.fail_refresh = False
        self.corrupt_downloads = False

    def createXML(self, xml: str, flags: int) -> FakeVolume:
        volume = FakeVolume(self, xml)
        if volume.name in self.volumes:
            raise _error(f"storage volume '{volume.name}' exists already")
        self.volumes[volume.name] = volume
        return volume

    def storageVolLookupByName(self, name: str) -> FakeVolume:
        if name not in self.volumes:
            raise _error(f"Storage volume not found: no storage vol with matching name '{name}'")
        return self.volumes[name]

    def refresh(self, flags: int) -> None:
        self.refresh_count += 1
        if self.fail_refresh:
            raise _error("pool refresh failed")


class FakeDomain:
    def __init__(self, xml: str, host: "FakeHypervisor") -> None:
        root = fromstring(xml)
        self.host = host
        self.xml = xml
        self._name = root.findtext("name")
        self.vcpus = int(root.findtext("vcpu"))
        self.max_mem_kib = int(root.findtext("memory")) * 1024
        self.state_code = libvirt.VIR_DOMAIN_SHUTOFF
        self.leases: Dict[str, dict] = {}
        self.fail_start = False

    def name(self) -> str:
        return self._name

    def info(self) -> List[int]:
        return [self.state_code, self.max_mem_kib, self.max_mem_kib, self.vcpus, 0]

    def state(self) -> List[int]:
        return [self.state_code, 0]

    def isActive(self) -> int:
        return 1 if self.state_code == libvirt.VIR_DOMAIN_RUNNING else 0

    def create(self) -> int:
        if self.fail_start:
            raise _error("internal error: process exited while connecting to monitor")
        self.state_code = libvirt.VIR_DOMAIN_RUNNING
        return 0

    def destroy(self) -> int:
        self.state_code = libvirt.VIR_DOMAIN_SHUTOFF
        return 0

    def undefine(self) -> int:
        self.host.domains.pop(self._name, None)
        return 0

    def interfaceAddresses(self, source: int, flags: int = 0) -> Dict[str, dict]:
        return self.leases

    def add_lease(self, iface: str, *addresses: str) -> None:
        self.leases[iface] = {
            "hwaddr": "52:54:00:12:34:56",
            "addrs": [{"addr": addr, "prefix": 24, "type": libvirt.VIR_IP_ADDR_TYPE_IPV4} for addr in addresses],
        }


class FakeHypervisor:
    """Stands in for a ``virConnect`` and counts how often it is opened."""

    def __init__(self) -> None:
        self.domains: Dict[str, FakeDomain] = {}
        self.pools: Dict[str, FakePool] = {"default": FakePool("default")}
        self.streams: List[FakeStream] = []
        self.opened = 0
        self.closed = 0

    @contextmanager
    def connect(self):
        self.opened += 1
        try:
            yield self
        finally:
            self.closed += 1

    def lookupByName(self, name: str) -> FakeDomain:
        if name not in self.domains:
            raise _error(f"Domain not found: no domain with matching name '{name}'")
        return self.domains[name]

    def defineXML(self, xml: str) -> FakeDomain:
        domain = FakeDomain(xml, self)
        self.domains[domain.name()] = domain
        return domain

    def storagePoolLookupByName(self, name: str) -> FakePool:
        if name not in self.pools:
            raise _error(f"Storage pool not found: no storage pool with matching name '{name}'")
        return self.pools[name]

    def newStream(self, flags: int) -> FakeStream:
        stream = FakeStream()
        self.streams.append(stream)
        return stream

    @property
    def pool(self) -> FakePool:
        return self.pools["default"]


def fake_iso(name: str, user_data: str) -> bytes:
    return b"CD001" + name.encode() + b"\x00" + user_data.encode()


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def manager(hypervisor) -> MachineManager:
    return MachineManager(connect=hypervisor.connect)


@pytest.fixture(autouse=True)
def fake_iso_builder():
    """Keep unit tests independent of xorriso being installed."""
    with patch("provisioner.vm.build_cloud_init_iso", side_effect=fake_iso) as mock_build:
        yield mock_build


@pytest.fixture
def machine_spec() -> MachineSpec:
    return MachineSpec(
        name="test1",
        cpu=2,
        memory_mb=2048,
        disk_size_gb=10,
        backing_image_path="/images/base.qcow2",
        user_data="#cloud-config\nhostname: test1\n",
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the provisioner reads."""
    for key in (
        "LIBVIRT_URI",
        "LIBVIRT_DEFAULT_URI",
        "PROVISIONER_ISO_TOOL",
        "MACHINE_NAME",
        "CPUS",
        "MEMORY",
        "DISK_SIZE",
        "BACKING_IMAGE",
        "BACKING_IMAGE_FORMAT",
        "NETWORK",
        "STORAGE_POOL",
        "CLOUD_INIT_USER_DATA",
    ):
        monkeypatch.delenv(key, raising=False)
