"""Tests for snapshot materialization on the remote cluster."""

import json

import pytest

from conftest import make_rg
from internal.k8s.client import K8sClientError
from internal.models.types import ReplicationGroup
from internal.replication.errors import ActionPayloadError, SnapshotError
from internal.replication.snapshots import SnapshotMaterializer, parse_action_annotation

NOW = 1700000000


def _group(keys, namespace="snaps", attributes=None, extra_annotations=None, payload=None):
    annotations = {
        keys.action: payload if payload is not None else json.dumps(
            {"name": "CreateSnapshot", "snapshotNamespace": namespace}
        ),
    }
    annotations.update(extra_annotations or {})
    obj = make_rg("rg1", annotations=annotations, last_action={
        "condition": "CREATE_SNAPSHOT",
        "time": "2024-03-01T10:00:00Z",
        "actionAttributes": attributes if attributes is not None else {"vol-h1": "snap-h1"},
    })
    return ReplicationGroup.from_dict(obj)


def _pvc_flags(keys, storage_class="fast"):
    return {keys.snapshot_create_pvc: "true", keys.snapshot_storage_class: storage_class}


def _add_source_claim(local, keys, namespace="app", name="data", volume="pv-1", handle="vol-h1"):
    local.claims[f"{namespace}/{name}"] = {
        "metadata": {"name": name, "namespace": namespace,
                     "labels": {keys.replication_group_label: "rg1"}},
        "spec": {
            "volumeName": volume,
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": "8Gi"}},
            "storageClassName": "replicated-sc",
        },
    }
    local.volumes[volume] = {"metadata": {"name": volume},
                             "spec": {"csi": {"driver": "csi-vxflexos.dellemc.com",
                                              "volumeHandle": handle}}}


@pytest.fixture
def materializer(local, keys):
    return SnapshotMaterializer(local, keys, clock=lambda: NOW)


def test_creates_namespace_class_content_and_snapshot(materializer, remote, keys):
    created = materializer.materialize(_group(keys), remote)

    assert created == ["snapshot-snap-h1"]
    assert remote.namespaces["snaps"]["metadata"]["name"] == "snaps"
    sc = remote.snapshot_classes["default-vxflexos-snapshotclass"]
    assert sc["driver"] == "csi-vxflexos.dellemc.com"
    assert sc["deletionPolicy"] == "Delete"

    content = remote.snapshot_contents[f"volume-vol-h1-{NOW}"]
    assert content["spec"]["source"]["snapshotHandle"] == "snap-h1"
    assert content["spec"]["volumeSnapshotRef"]["name"] == "snapshot-snap-h1"
    assert content["spec"]["volumeSnapshotRef"]["namespace"] == "snaps"
    assert content["spec"]["volumeSnapshotClassName"] == "default-vxflexos-snapshotclass"
    assert content["spec"]["driver"] == "csi-vxflexos.dellemc.com"

    snapshot = remote.snapshots["snaps/snapshot-snap-h1"]
    assert snapshot["spec"]["volumeSnapshotClassName"] == "default-vxflexos-snapshotclass"
    assert remote.claims == {}


def test_existing_namespace_and_class_are_reused(materializer, remote, keys):
    remote.namespaces["snaps"] = {"metadata": {"name": "snaps"}}
    remote.snapshot_classes["default-vxflexos-snapshotclass"] = {
        "metadata": {"name": "default-vxflexos-snapshotclass"},
        "driver": "csi-vxflexos.dellemc.com", "deletionPolicy": "Retain",
    }
    materializer.materialize(_group(keys), remote)
    assert ("create_namespace", "snaps") not in remote.calls
    assert ("create_snapshot_class", "default-vxflexos-snapshotclass") not in remote.calls
    assert remote.snapshot_contents[f"volume-vol-h1-{NOW}"]["spec"]["deletionPolicy"] == "Retain"


def test_snapshot_class_override_must_exist(materializer, remote, keys):
    rg = _group(keys, extra_annotations={keys.snapshot_class: "gold"})
    with pytest.raises(SnapshotError):
        materializer.materialize(rg, remote)
    assert remote.snapshot_contents == {}
    assert "gold" not in remote.snapshot_classes


def test_snapshot_class_override_is_used(materializer, remote, keys):
    remote.snapshot_classes["gold"] = {"metadata": {"name": "gold"},
                                       "driver": "csi-vxflexos.dellemc.com",
                                       "deletionPolicy": "Delete"}
    materializer.materialize(_group(keys, extra_annotations={keys.snapshot_class: "gold"}), remote)
    assert remote.snapshots["snaps/snapshot-snap-h1"]["spec"]["volumeSnapshotClassName"] == "gold"


def test_missing_action_annotation_does_nothing(materializer, remote, keys):
    rg = _group(keys)
    del rg.annotations[keys.action]
    assert materializer.materialize(rg, remote) == []
    assert remote.calls == []


def test_malformed_payload_raises(materializer, remote, keys):
    with pytest.raises(ActionPayloadError):
        materializer.materialize(_group(keys, payload="{not json"), remote)
    assert remote.calls == []


def test_parse_action_annotation(keys):
    payload = parse_action_annotation(_group(keys, namespace="ns1"), keys)
    assert payload.snapshot_namespace == "ns1"
    assert payload.action_name == "CreateSnapshot"


def test_creates_claim_from_snapshot(materializer, local, remote, keys):
    _add_source_claim(local, keys)
    materializer.materialize(_group(keys, extra_annotations=_pvc_flags(keys)), remote)

    claim = remote.claims["snaps/data"]
    assert claim["spec"]["storageClassName"] == "fast"
    assert claim["spec"]["accessModes"] == ["ReadWriteOnce"]
    assert claim["spec"]["resources"] == {"requests": {"storage": "8Gi"}}
    assert claim["spec"]["dataSource"] == {
        "apiGroup": "snapshot.storage.k8s.io", "kind": "VolumeSnapshot", "name": "snapshot-snap-h1",
    }


def test_claim_in_snapshot_namespace_goes_to_cloned_namespace(materializer, local, remote, keys):
    _add_source_claim(local, keys, namespace="app")
    materializer.materialize(_group(keys, namespace="app", extra_annotations=_pvc_flags(keys)),
                             remote)
    assert "cloned-app" in remote.namespaces
    assert "cloned-app/snapshot-snap-h1" in remote.snapshots
    assert "cloned-app/data" in remote.claims


def test_claim_requires_both_flags(materializer, local, remote, keys):
    _add_source_claim(local, keys)
    rg = _group(keys, extra_annotations={keys.snapshot_create_pvc: "true"})
    materializer.materialize(rg, remote)
    assert remote.claims == {}
    assert ("list_persistent_volume_claims", f"{keys.replication_group_label}=rg1") \
        not in local.calls


def test_replication_enabled_storage_class_skips_claim(materializer, local, remote, keys):
    _add_source_claim(local, keys)
    remote.storage_classes["fast"] = {
        "metadata": {"name": "fast"},
        "parameters": {keys.storage_class_replication_param: "true"},
    }
    materializer.materialize(_group(keys, extra_annotations=_pvc_flags(keys)), remote)
    assert "snaps/snapshot-snap-h1" in remote.snapshots
    assert remote.claims == {}


def test_claim_lookup_failure_still_snapshots(materializer, local, remote, keys):
    _add_source_claim(local, keys)
    local.failures["list_persistent_volume_claims"] = K8sClientError("forbidden")
    materializer.materialize(_group(keys, extra_annotations=_pvc_flags(keys)), remote)
    assert "snaps/snapshot-snap-h1" in remote.snapshots
    assert remote.claims == {}


def test_unmatched_volume_handle_creates_no_claim(materializer, local, remote, keys):
    _add_source_claim(local, keys, handle="vol-other")
    materializer.materialize(_group(keys, extra_annotations=_pvc_flags(keys)), remote)
    assert "snaps/snapshot-snap-h1" in remote.snapshots
    assert remote.claims == {}


def test_failure_aborts_remaining_pairs(materializer, remote, keys):
    rg = _group(keys, attributes={"vol-h1": "snap-h1", "vol-h2": "snap-h2"})
    remote.failures["create_snapshot"] = K8sClientError("quota exceeded")
    with pytest.raises(SnapshotError):
        materializer.materialize(rg, remote)
    assert list(remote.snapshot_contents) == [f"volume-vol-h1-{NOW}"]


def test_each_pair_gets_its_own_snapshot(materializer, remote, keys):
    rg = _group(keys, attributes={"vol-h1": "snap-h1", "vol-h2": "snap-h2"})
    created = materializer.materialize(rg, remote)
    assert sorted(created) == ["snapshot-snap-h1", "snapshot-snap-h2"]
    assert f"volume-vol-h2-{NOW}" in remote.snapshot_contents


def test_namespace_lookup_error_is_snapshot_error(materializer, remote, keys):
    remote.failures["get_namespace"] = K8sClientError("timeout")
    with pytest.raises(SnapshotError):
        materializer.materialize(_group(keys), remote)
