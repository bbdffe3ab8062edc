"""Per-operation libvirt connections."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlparse

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from provisioner.constants import LIBVIRT_FALLBACK_URI_ENV, LIBVIRT_URI_ENV
from provisioner.exceptions import ConfigurationError, HypervisorConnectionError
from provisioner.utils import get_env, log


def resolve_uri() -> str:
    """Return the hypervisor URI from the environment.

    ``LIBVIRT_URI`` wins over ``LIBVIRT_DEFAULT_URI``; there is no built-in default.
    """
    uri = (get_env(LIBVIRT_URI_ENV) or "").strip()
    if not uri:
        uri = (get_env(LIBVIRT_FALLBACK_URI_ENV) or "").strip()
    if not uri:
        raise ConfigurationError(
            f"{LIBVIRT_URI_ENV} or {LIBVIRT_FALLBACK_URI_ENV} environment variable must be set "
            "in order to connect to libvirt"
        )
    try:
        parsed = urlparse(uri)
    except ValueError as exc:
        raise ConfigurationError(f"failed to parse libvirt URI '{uri}': {exc}") from exc
    if not parsed.scheme:
        raise ConfigurationError(f"failed to parse libvirt URI '{uri}': missing scheme")
    return uri


def open_connection(uri: str) -> "libvirt.virConnect":
    try:
        conn = libvirt.open(uri)
    except libvirt.libvirtError as exc:
        raise HypervisorConnectionError(f"failed to connect to libvirt at {uri}: {exc}") from exc
    if conn is None:
        raise HypervisorConnectionError(f"failed to connect to libvirt at {uri}")
    return conn


@contextmanager
def connection() -> Iterator["libvirt.virConnect"]:
    """Open a connection for the duration of one operation, then close it."""
    uri = resolve_uri()
    conn = open_connection(uri)
    log("DEBUG", f"Opened libvirt connection to {uri}")
    try:
        yield conn
    finally:
        try:
            conn.close()
        except libvirt.libvirtError as exc:
            log("WARN", f"failed closing connection to libvirt: {exc}")
