"""Tests for provisioner.models module."""

from __future__ import annotations

import dataclasses

import pytest

from provisioner.models import (
    ClusterRecord,
    MachinePhase,
    MachineRecord,
    MachineSpec,
    ReconcileResult,
    derive_resource_names,
    provider_id,
)


class TestResourceNames:
    def test_derived_from_name(self):
        names = derive_resource_names("test1")
        assert names.domain == "test1"
        assert names.disk_volume == "test1.qcow2"
        assert names.cloud_init_volume == "test1-cloudinit.iso"

    def test_spec_property_matches(self, machine_spec):
        assert machine_spec.resource_names == derive_resource_names("test1")

    def test_provider_id(self):
        assert provider_id("test1") == "libvirt:///test1"


class TestMachineSpec:
    def test_defaults(self):
        spec = MachineSpec(name="vm", cpu=1, memory_mb=512, disk_size_gb=5, backing_image_path="/b.qcow2")
        assert spec.network == "default"
        assert spec.storage_pool == "default"
        assert spec.backing_image_format == "qcow2"
        assert spec.user_data == ""

    def test_frozen(self, machine_spec):
        with pytest.raises(dataclasses.FrozenInstanceError):
            machine_spec.cpu = 4  # type: ignore[misc]


class TestRecords:
    def test_machine_record_defaults(self, machine_spec):
        record = MachineRecord(spec=machine_spec)
        assert record.key == "default/test1"
        assert record.status.phase is None
        assert record.status.addresses == []
        assert record.finalizers == set()

    def test_records_do_not_share_state(self, machine_spec):
        first = MachineRecord(spec=machine_spec)
        second = MachineRecord(spec=machine_spec)
        first.finalizers.add("x")
        first.status.ready = True
        assert second.finalizers == set()
        assert second.status.ready is False

    def test_cluster_record_key(self):
        assert ClusterRecord(name="demo", namespace="ns").key == "ns/demo"


def test_phase_values_are_strings():
    assert MachinePhase.READY == "Ready"
    assert MachinePhase.AWAITING_BOOTSTRAP.value == "AwaitingBootstrap"


def test_reconcile_result_default_is_no_requeue():
    assert ReconcileResult().requeue_after is None
    assert ReconcileResult(10.0).requeue_after == 10.0
