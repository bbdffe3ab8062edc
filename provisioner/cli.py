"""CLI entry points for the libvirt machine provisioner."""

from __future__ import annotations

import argparse
import dataclasses
import time
from pathlib import Path
from typing import Callable, List, Optional

from provisioner.config import load_machine_spec, spec_from_env
from provisioner.constants import REQUEUE_PERIODIC
from provisioner.exceptions import ManagerError, NotRunningError
from provisioner.models import MachineRecord, MachineSpec
from provisioner.reconciler import MachineReconciler
from provisioner.utils import log, validate_machine_name
from provisioner.vm import MachineManager

LOCAL_SECRET_NAME = "local-user-data"
# Commands that only address an existing machine by name.
NAME_ONLY_COMMANDS = ("delete", "status")


def resolve_spec(config: Optional[str], name: Optional[str], require_backing_image: bool = True) -> MachineSpec:
    if config:
        spec = load_machine_spec(Path(config), require_backing_image=require_backing_image)
        if name and name != spec.name:
            spec = dataclasses.replace(spec, name=validate_machine_name(name))
        return spec
    return spec_from_env(name, require_backing_image=require_backing_image)


def show_config(spec: MachineSpec) -> None:
    """Print the resolved machine spec."""
    for field in dataclasses.fields(spec):
        value = getattr(spec, field.name)
        if field.name == "user_data":
            lines = len(value.splitlines())
            print(f"  {field.name}: <{lines} lines>")
        else:
            print(f"  {field.name}: {value}")
    names = spec.resource_names
    print(f"  domain: {names.domain}")
    print(f"  disk_volume: {names.disk_volume}")
    print(f"  cloud_init_volume: {names.cloud_init_volume}")


def print_status(manager: MachineManager, spec: MachineSpec) -> int:
    if not manager.exists(spec.name):
        log("WARN", f"VM {spec.name} does not exist")
        return 1
    if manager.is_reconciled(spec):
        log("SUCCESS", f"VM {spec.name} matches expected configuration")
    else:
        log("WARN", f"VM {spec.name} has drifted from expected configuration")
    if not manager.is_ready(spec.name):
        log("WARN", f"VM {spec.name} is not running!")
        return 0
    log("SUCCESS", f"VM {spec.name} is running")
    try:
        addresses = manager.get_ip_addresses(spec.name)
    except NotRunningError as exc:
        log("WARN", str(exc))
        return 0
    print(f"  IP Addresses: {', '.join(addresses) if addresses else '<none yet>'}")
    return 0


def local_record(spec: MachineSpec) -> MachineRecord:
    """A snapshot with every prerequisite satisfied, for driving the reconciler by hand."""
    return MachineRecord(
        spec=spec,
        owner_machine=spec.name,
        cluster="local",
        cluster_infrastructure_ref="local",
        cluster_provisioned=True,
        bootstrap_secret_name=LOCAL_SECRET_NAME if spec.user_data else None,
    )


def run_reconcile(
    manager: MachineManager,
    spec: MachineSpec,
    max_passes: int,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Run reconciliation passes until the machine reaches its periodic recheck."""
    reconciler = MachineReconciler(manager, lambda _namespace, _secret: {"value": spec.user_data})
    record = local_record(spec)
    for attempt in range(1, max_passes + 1):
        result = reconciler.reconcile(record)
        phase = record.status.phase.value if record.status.phase else "unknown"
        log("DEBUG", f"Pass {attempt}: phase={phase} requeue_after={result.requeue_after}")
        if result.requeue_after is None or result.requeue_after >= REQUEUE_PERIODIC:
            break
        if attempt < max_passes:
            sleep(result.requeue_after)
    else:
        log("WARN", f"VM {spec.name} not ready after {max_passes} passes (phase {phase})")
        return 1

    if record.status.provisioned:
        addresses = ", ".join(addr.address for addr in record.status.addresses)
        log("SUCCESS", f"VM {spec.name} is provisioned ({record.provider_id}; {addresses})")
        return 0
    log("WARN", f"VM {spec.name} stopped in phase {phase}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision single virtual machines on a libvirt host")
    parser.add_argument("--config", "-c", help="Machine manifest (YAML); defaults to environment variables")
    sub = parser.add_subparsers(dest="command", required=True)

    for command, help_text in (
        ("create", "Create the VM"),
        ("delete", "Delete the VM and its volumes"),
        ("status", "Show existence, drift, power state and addresses"),
        ("show-config", "Show the resolved machine spec and exit"),
    ):
        cmd = sub.add_parser(command, help=help_text)
        cmd.add_argument("name", nargs="?", help="Machine name (overrides the manifest)")

    reconcile = sub.add_parser("reconcile", help="Reconcile the VM until it is provisioned")
    reconcile.add_argument("name", nargs="?", help="Machine name (overrides the manifest)")
    reconcile.add_argument("--max-passes", type=int, default=30, help="Give up after this many passes")
    return parser


def main(argv: Optional[List[str]] = None, manager: Optional[MachineManager] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        spec = resolve_spec(
            args.config, args.name, require_backing_image=args.command not in NAME_ONLY_COMMANDS
        )
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.command == "show-config":
        show_config(spec)
        return 0

    manager = manager or MachineManager()
    try:
        if args.command == "create":
            manager.create(spec)
            log("SUCCESS", f"VM {spec.name} created successfully")
            return 0
        if args.command == "delete":
            manager.destroy(spec.name, spec.storage_pool)
            log("SUCCESS", f"VM {spec.name} deleted successfully")
            return 0
        if args.command == "status":
            return print_status(manager, spec)
        return run_reconcile(manager, spec, max(1, args.max_passes))
    except ManagerError as exc:
        log("ERROR", str(exc))
        if exc.__cause__ is not None:
            log("ERROR", f"Caused by: {exc.__cause__}")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
