"""Reconciliation of declared machines and clusters against the hypervisor.

A pass looks at the current snapshot, asks the ``MachineManager`` what exists,
issues at most one mutating call (create or destroy) and returns how long the
scheduler should wait before the next pass. The scheduler must not run two
passes for the same machine name concurrently; nothing here locks per name.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, List, Mapping, Optional

from provisioner.bootstrap import SecretValue, parse_bootstrap_secret
from provisioner.constants import (
    ADDRESS_TYPE_EXTERNAL_IP,
    CLUSTER_FINALIZER,
    MACHINE_FINALIZER,
    REQUEUE_DRIFT,
    REQUEUE_PAUSED,
    REQUEUE_PERIODIC,
    REQUEUE_SHORT,
)
from provisioner.exceptions import ManagerError, ReconcileError
from provisioner.models import (
    ClusterRecord,
    MachineAddress,
    MachineObservation,
    MachinePhase,
    MachineRecord,
    ReconcileResult,
    provider_id,
)
from provisioner.utils import log
from provisioner.vm import MachineManager

# (namespace, secret name) -> secret data, or None when the secret does not exist.
BootstrapSource = Callable[[str, str], Optional[Mapping[str, SecretValue]]]


class MachineReconciler:
    def __init__(self, manager: MachineManager, bootstrap_source: BootstrapSource) -> None:
        self.manager = manager
        self.bootstrap_source = bootstrap_source

    def reconcile(self, record: MachineRecord) -> ReconcileResult:
        spec = record.spec
        record.finalizers.add(MACHINE_FINALIZER)

        if record.paused:
            log("INFO", f"LibvirtMachine {record.key} or its cluster is marked as paused. Won't reconcile")
            record.status.phase = MachinePhase.PAUSED
            return ReconcileResult(REQUEUE_PAUSED)

        if record.deletion_requested:
            return self._reconcile_delete(record)

        if not self._dependencies_ready(record):
            record.status.phase = MachinePhase.AWAITING_DEPENDENCIES
            return ReconcileResult()

        observation = MachineObservation(exists=self.manager.exists(spec.name))
        if observation.exists:
            observation.reconciled = self.manager.is_reconciled(spec)

        if observation.exists and not observation.reconciled:
            log("INFO", f"destroying out-of-sync virtual machine '{spec.name}'")
            record.status.phase = MachinePhase.DELETING
            record.status.ready = False
            try:
                self.manager.destroy(spec.name, spec.storage_pool)
            except ManagerError as exc:
                raise ReconcileError(f"failed to destroy out-of-sync virtual machine '{spec.name}'") from exc
            return ReconcileResult(REQUEUE_DRIFT)

        if not observation.exists:
            record.status.ready = False
            return self._reconcile_create(record)

        record.provider_id = provider_id(spec.name)

        observation.ready = self.manager.is_ready(spec.name)
        if not observation.ready:
            log("INFO", f"waiting for virtual machine '{spec.name}' to become ready")
            record.status.phase = MachinePhase.VERIFYING
            record.status.ready = False
            return ReconcileResult(REQUEUE_SHORT)

        try:
            observation.addresses = self.manager.get_ip_addresses(spec.name)
        except ManagerError as exc:
            raise ReconcileError(f"failed to get IP addresses for virtual machine '{spec.name}'") from exc
        if not observation.addresses:
            log("INFO", f"waiting for IP address to be assigned to virtual machine '{spec.name}'")
            record.status.phase = MachinePhase.VERIFYING
            record.status.ready = False
            return ReconcileResult(REQUEUE_SHORT)

        self._publish(record, observation.addresses)
        # Periodic drift recheck.
        return ReconcileResult(REQUEUE_PERIODIC)

    def _dependencies_ready(self, record: MachineRecord) -> bool:
        if record.owner_machine is None:
            log("INFO", f"waiting for machine controller to set OwnerRef on LibvirtMachine {record.key}")
            return False
        if record.cluster is None:
            log("INFO", f"Please associate LibvirtMachine {record.key} with a cluster")
            return False
        if record.cluster_infrastructure_ref is None:
            log("INFO", f"Cluster {record.namespace}/{record.cluster} infrastructureRef is not available yet")
            return False
        if not record.cluster_provisioned:
            log("INFO", f"Cluster {record.namespace}/{record.cluster} is not provisioned yet")
            return False
        return True

    def _reconcile_delete(self, record: MachineRecord) -> ReconcileResult:
        spec = record.spec
        record.status.phase = MachinePhase.DELETING
        if self.manager.exists(spec.name):
            log("INFO", f"deleting virtual machine '{spec.name}'")
            try:
                self.manager.destroy(spec.name, spec.storage_pool)
            except ManagerError as exc:
                raise ReconcileError("failed to destroy LibvirtMachine", requeue_after=REQUEUE_DRIFT) from exc
        log("INFO", f"deleting LibvirtMachine {record.key}")
        record.finalizers.discard(MACHINE_FINALIZER)
        record.status.phase = MachinePhase.DELETED
        record.status.ready = False
        return ReconcileResult()

    def _reconcile_create(self, record: MachineRecord) -> ReconcileResult:
        spec = record.spec
        record.status.phase = MachinePhase.AWAITING_BOOTSTRAP
        if record.bootstrap_secret_name is None:
            log(
                "INFO",
                f"waiting for the bootstrap provider controller to set bootstrap data for LibvirtMachine {record.key}",
            )
            return ReconcileResult(REQUEUE_SHORT)

        user_data = self._get_bootstrap_data(record.namespace, record.bootstrap_secret_name)
        if not user_data:
            log("INFO", f"bootstrap data is not available yet for LibvirtMachine {record.key}")
            return ReconcileResult(REQUEUE_SHORT)

        record.status.phase = MachinePhase.CREATING
        try:
            self.manager.create(replace(spec, user_data=user_data))
        except ManagerError as exc:
            raise ReconcileError(f"failed to create virtual machine '{spec.name}'") from exc
        log("INFO", f"creating virtual machine '{spec.name}'")
        return ReconcileResult(REQUEUE_SHORT)

    def _get_bootstrap_data(self, namespace: str, secret_name: str) -> str:
        data = self.bootstrap_source(namespace, secret_name)
        if data is None:
            raise ReconcileError(f"failed to retrieve bootstrap data secret '{secret_name}'")
        return parse_bootstrap_secret(data, secret_name)

    @staticmethod
    def _publish(record: MachineRecord, addresses: List[str]) -> None:
        machine_addresses = [MachineAddress(ADDRESS_TYPE_EXTERNAL_IP, address) for address in addresses]
        if record.status.addresses != machine_addresses:
            log("INFO", f"got IP addresses for virtual machine '{record.spec.name}': {', '.join(addresses)}")
        record.status.addresses = machine_addresses
        if not record.status.provisioned:
            log("INFO", f"LibvirtMachine {record.key} is provisioned")
        record.status.ready = True
        record.status.provisioned = True
        record.status.phase = MachinePhase.READY


class ClusterReconciler:
    """Marks the cluster infrastructure ready; clusters own no hypervisor resources."""

    def reconcile(self, record: ClusterRecord) -> ReconcileResult:
        record.finalizers.add(CLUSTER_FINALIZER)

        if record.owner_cluster is None:
            log("INFO", f"waiting for cluster controller to set OwnerRef on LibvirtCluster {record.key}")
            return ReconcileResult()

        if record.paused:
            log("INFO", f"LibvirtCluster {record.key} or linked Cluster is marked as paused. Won't reconcile.")
            return ReconcileResult(REQUEUE_PAUSED)

        if record.deletion_requested:
            log("INFO", f"deleting LibvirtCluster {record.key}")
            record.finalizers.discard(CLUSTER_FINALIZER)
            return ReconcileResult()

        record.status.ready = True
        record.status.provisioned = True
        log("INFO", f"LibvirtCluster {record.key} is provisioned")
        return ReconcileResult()
