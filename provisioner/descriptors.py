"""Libvirt XML descriptors for machine domains and their storage volumes."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement, tostring

from provisioner.models import MachineSpec
from provisioner.network import render_network_interface


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_disk_volume_xml(spec: MachineSpec) -> str:
    """qcow2 overlay on top of the backing image; the base image is never copied."""
    volume = Element("volume")
    SubElement(volume, "name").text = spec.resource_names.disk_volume
    SubElement(volume, "capacity", unit="GiB").text = str(spec.disk_size_gb)
    target = SubElement(volume, "target")
    SubElement(target, "format", type="qcow2")
    backing = SubElement(volume, "backingStore")
    SubElement(backing, "path").text = spec.backing_image_path
    SubElement(backing, "format", type=spec.backing_image_format)
    return _element_to_str(volume)


def render_cloud_init_volume_xml(volume_name: str, size_bytes: int) -> str:
    volume = Element("volume")
    SubElement(volume, "name").text = volume_name
    SubElement(volume, "capacity", unit="bytes").text = str(size_bytes)
    target = SubElement(volume, "target")
    SubElement(target, "format", type="raw")
    return _element_to_str(volume)


def render_domain_xml(spec: MachineSpec, disk_path: str, iso_path: str) -> str:
    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = spec.resource_names.domain
    SubElement(domain, "memory", unit="MiB").text = str(spec.memory_mb)
    SubElement(domain, "vcpu").text = str(spec.cpu)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64").text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    devices = SubElement(domain, "devices")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="qcow2")
    SubElement(disk, "source", file=disk_path)
    SubElement(disk, "target", dev="vda", bus="virtio")

    # Seed ISO (cloud-init)
    seed_disk = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(seed_disk, "driver", name="qemu", type="raw")
    SubElement(seed_disk, "source", file=iso_path)
    SubElement(seed_disk, "target", dev="hda", bus="ide")
    SubElement(seed_disk, "readonly")

    devices.append(render_network_interface(spec.network))

    # Serial & console
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="virtio", port="0")

    return _element_to_str(domain)
