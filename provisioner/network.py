"""Network interface XML generation."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement

from provisioner.exceptions import ConfigurationError


def render_network_interface(network_name: str, model: str = "virtio") -> Element:
    """Render a libvirt interface attached to an existing libvirt network."""
    if not network_name:
        raise ConfigurationError("network name must not be empty")
    iface = Element("interface", type="network")
    SubElement(iface, "source", network=network_name)
    SubElement(iface, "model", type=model)
    return iface
