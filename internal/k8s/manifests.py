from __future__ import annotations

import time
from typing import Any, Dict, Optional

from internal.k8s.client import SNAP_GROUP, SNAP_VERSION
from internal.models.types import (
    SELF_CLUSTER_ID, Keys, ReplicationGroup, ReplicationGroupSpec,
)


SNAP_API_VERSION = f"{SNAP_GROUP}/{SNAP_VERSION}"
SNAPSHOT_KIND = "VolumeSnapshot"
DEFAULT_DELETION_POLICY = "Delete"


def build_remote_replication_group(
    local: ReplicationGroup, name: str, local_cluster_id: str, keys: Keys,
) -> ReplicationGroup:
    """Build the mirror of ``local`` as it should exist on the remote cluster.

    Protection-group fields are swapped so the mirror describes the same
    relationship from the other side.
    """
    annotations = {
        keys.remote_replication_group: local.name,
        keys.retention_policy: local.annotation(keys.retention_policy),
        keys.remote_cluster_id: local_cluster_id,
    }
    labels = {
        keys.driver_name: local.labels.get(keys.driver_name, ""),
        keys.remote_cluster_id: local_cluster_id,
    }
    labels.update(project_context_labels(local, keys))

    spec = ReplicationGroupSpec(
        driver_name=local.spec.driver_name,
        action="",
        remote_cluster_id=local_cluster_id,
        protection_group_id=local.spec.remote_protection_group_id,
        protection_group_attributes=dict(local.spec.remote_protection_group_attributes),
        remote_protection_group_id=local.spec.protection_group_id,
        remote_protection_group_attributes=dict(local.spec.protection_group_attributes),
    )
    return ReplicationGroup(name=name, spec=spec, annotations=annotations, labels=labels)


def project_context_labels(local: ReplicationGroup, keys: Keys) -> Dict[str, str]:
    """Driver attributes under the context prefix become ``<domain>/<rest>`` labels."""
    prefix = local.annotation(keys.context_prefix)
    if not prefix:
        return {}
    labels = {}
    for key, value in local.spec.remote_protection_group_attributes.items():
        if key.startswith(prefix):
            rest = key[len(prefix):]
            if not rest.startswith("/"):
                rest = "/" + rest
            labels[f"{keys.domain}{rest}"] = value
    return labels


def mirror_name(local: ReplicationGroup, keys: Keys) -> str:
    """Name the mirror should have on the remote cluster."""
    name = local.annotation(keys.remote_replication_group) or local.name
    if local.spec.remote_cluster_id == SELF_CLUSTER_ID and not local.name.startswith("replicated"):
        name = f"replicated-{local.name}"
    return name


def cluster_qualified_name(local_cluster_id: str, name: str) -> str:
    return f"sourceclusterid-{local_cluster_id}-{name}".lower()


def default_snapshot_class_name(driver: str) -> str:
    """``csi-vxflexos.dellemc.com`` -> ``default-vxflexos-snapshotclass``."""
    part = driver.split(".")[0]
    return f"default-{part.removeprefix('csi-')}-snapshotclass"


def build_namespace(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def build_snapshot_class(driver: str, name: str) -> Dict[str, Any]:
    return {
        "apiVersion": SNAP_API_VERSION,
        "kind": "VolumeSnapshotClass",
        "metadata": {"name": name},
        "driver": driver,
        "deletionPolicy": DEFAULT_DELETION_POLICY,
    }


def build_snapshot_reference(snapshot_handle: str, namespace: str) -> Dict[str, Any]:
    return {
        "kind": SNAPSHOT_KIND,
        "apiVersion": SNAP_API_VERSION,
        "name": f"snapshot-{snapshot_handle}",
        "namespace": namespace,
    }


def build_snapshot_content(
    snapshot_handle: str,
    volume_handle: str,
    snapshot_ref: Dict[str, Any],
    snapshot_class: Dict[str, Any],
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """The content is named after the volume and the current second so reruns never collide."""
    stamp = int(now if now is not None else time.time())
    return {
        "apiVersion": SNAP_API_VERSION,
        "kind": "VolumeSnapshotContent",
        "metadata": {"name": f"volume-{volume_handle}-{stamp}"},
        "spec": {
            "volumeSnapshotRef": dict(snapshot_ref),
            "source": {"snapshotHandle": snapshot_handle},
            "volumeSnapshotClassName": snapshot_class["metadata"]["name"],
            "deletionPolicy": snapshot_class.get("deletionPolicy", DEFAULT_DELETION_POLICY),
            "driver": snapshot_class.get("driver", ""),
        },
    }


def build_snapshot(name: str, content_name: str, class_name: str, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": SNAP_API_VERSION,
        "kind": SNAPSHOT_KIND,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "source": {"volumeSnapshotContentName": content_name},
            "volumeSnapshotClassName": class_name,
        },
    }


def build_claim_from_snapshot(
    name: str, namespace: str, snapshot_name: str, storage_class: str, source_spec: Dict[str, Any],
) -> Dict[str, Any]:
    """A claim restoring ``snapshot_name``, sized and accessed like the source claim."""
    spec: Dict[str, Any] = {
        "storageClassName": storage_class,
        "dataSource": {
            "apiGroup": SNAP_GROUP,
            "kind": SNAPSHOT_KIND,
            "name": snapshot_name,
        },
    }
    if source_spec.get("accessModes"):
        spec["accessModes"] = list(source_spec["accessModes"])
    if source_spec.get("resources"):
        spec["resources"] = source_spec["resources"]
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace},
        "spec": spec,
    }
