"""Shared fixtures: in-memory cluster clients standing in for the Kubernetes API."""

import copy
import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest

from internal.k8s.client import ConflictError, K8sClientError, NotFoundError
from internal.models.types import CRD_GROUP, CRD_KIND, CRD_VERSION, Keys, ReplicationGroup


class FakeClusterClient:
    """Dict-backed cluster. Updates honour resourceVersion like the API server."""

    def __init__(self, cluster_id):
        self.cluster_id = cluster_id
        self.groups = {}
        self.namespaces = {}
        self.snapshot_classes = {}
        self.snapshot_contents = {}
        self.snapshots = {}
        self.storage_classes = {}
        self.claims = {}
        self.volumes = {}
        self.events = []
        self.calls = []
        self.failures = {}
        self._rv = 0

    def _call(self, method, name):
        self.calls.append((method, name))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def _next_rv(self):
        self._rv += 1
        return str(self._rv)

    def writes(self):
        return [c for c in self.calls if not c[0].startswith(("get_", "list_"))]

    # replication groups

    def put_group(self, obj):
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = self._next_rv()
        self.groups[obj["metadata"]["name"]] = obj

    def get_replication_group(self, name):
        self._call("get_replication_group", name)
        if name not in self.groups:
            raise NotFoundError(f"replication group {name} not found")
        return ReplicationGroup.from_dict(copy.deepcopy(self.groups[name]))

    def list_replication_groups(self):
        self._call("list_replication_groups", "")
        return [ReplicationGroup.from_dict(copy.deepcopy(o)) for o in self.groups.values()]

    def create_replication_group(self, rg):
        self._call("create_replication_group", rg.name)
        if rg.name in self.groups:
            raise ConflictError(f"replication group {rg.name} already exists")
        self.put_group(rg.to_dict())
        return ReplicationGroup.from_dict(copy.deepcopy(self.groups[rg.name]))

    def update_replication_group(self, rg):
        self._call("update_replication_group", rg.name)
        stored = self.groups.get(rg.name)
        if stored is None:
            raise NotFoundError(f"replication group {rg.name} not found")
        if rg.resource_version != stored["metadata"]["resourceVersion"]:
            raise ConflictError(f"replication group {rg.name} was modified")
        obj = rg.to_dict()
        obj["metadata"]["resourceVersion"] = self._next_rv()
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get("finalizers"):
            del self.groups[rg.name]
        else:
            self.groups[rg.name] = obj
        return ReplicationGroup.from_dict(copy.deepcopy(obj))

    def delete_replication_group(self, rg):
        self._call("delete_replication_group", rg.name)
        stored = self.groups.get(rg.name)
        if stored is None:
            raise NotFoundError(f"replication group {rg.name} not found")
        if stored["metadata"].get("finalizers"):
            stored["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
            stored["metadata"]["resourceVersion"] = self._next_rv()
        else:
            del self.groups[rg.name]

    # namespaces and snapshots

    def get_namespace(self, name):
        self._call("get_namespace", name)
        if name not in self.namespaces:
            raise NotFoundError(f"namespace {name} not found")
        return self.namespaces[name]

    def create_namespace(self, manifest):
        name = manifest["metadata"]["name"]
        self._call("create_namespace", name)
        if name in self.namespaces:
            raise ConflictError(f"namespace {name} already exists")
        self.namespaces[name] = manifest
        return manifest

    def get_snapshot_class(self, name):
        self._call("get_snapshot_class", name)
        if name not in self.snapshot_classes:
            raise NotFoundError(f"snapshot class {name} not found")
        return self.snapshot_classes[name]

    def create_snapshot_class(self, manifest):
        self._call("create_snapshot_class", manifest["metadata"]["name"])
        self.snapshot_classes[manifest["metadata"]["name"]] = manifest
        return manifest

    def create_snapshot_content(self, manifest):
        name = manifest["metadata"]["name"]
        self._call("create_snapshot_content", name)
        if name in self.snapshot_contents:
            raise ConflictError(f"snapshot content {name} already exists")
        self.snapshot_contents[name] = manifest
        return manifest

    def create_snapshot(self, manifest):
        meta = manifest["metadata"]
        key = f"{meta['namespace']}/{meta['name']}"
        self._call("create_snapshot", key)
        self.snapshots[key] = manifest
        return manifest

    def get_storage_class(self, name):
        self._call("get_storage_class", name)
        if name not in self.storage_classes:
            raise NotFoundError(f"storage class {name} not found")
        return self.storage_classes[name]

    def create_persistent_volume_claim(self, manifest):
        meta = manifest["metadata"]
        key = f"{meta['namespace']}/{meta['name']}"
        self._call("create_persistent_volume_claim", key)
        self.claims[key] = manifest
        return manifest

    def list_persistent_volume_claims(self, label_selector):
        self._call("list_persistent_volume_claims", label_selector)
        label, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(c) for c in self.claims.values()
            if (c["metadata"].get("labels") or {}).get(label) == value
        ]

    def get_persistent_volume(self, name):
        self._call("get_persistent_volume", name)
        if name not in self.volumes:
            raise NotFoundError(f"volume {name} not found")
        return copy.deepcopy(self.volumes[name])

    def create_event(self, namespace, manifest):
        self._call("create_event", manifest["reason"])
        self.events.append(manifest)
        return manifest


class FakeConnections:
    def __init__(self, cluster_id, local, remotes):
        self.cluster_id = cluster_id
        self.local = local
        self.remotes = remotes

    def get_cluster_id(self):
        return self.cluster_id

    def get_connection(self, cluster_id):
        if cluster_id in ("self", self.cluster_id):
            return self.local
        if cluster_id not in self.remotes:
            raise K8sClientError(f"no connection configured for cluster '{cluster_id}'")
        return self.remotes[cluster_id]


class FakeRecorder:
    def __init__(self):
        self.events = []

    def normal(self, rg, message):
        self.events.append(("Normal", rg.name, message))

    def warning(self, rg, message):
        self.events.append(("Warning", rg.name, message))

    def of_type(self, event_type):
        return [e for e in self.events if e[0] == event_type]


def make_rg(name="rg1", annotations=None, labels=None, finalizers=None, remote_cluster_id="cluster-b",
            driver="csi-vxflexos.dellemc.com", pg_id="pg-local", remote_pg_id="pg-remote",
            last_action=None, deletion_timestamp=None, conditions=None):
    keys = Keys()
    metadata = {
        "name": name,
        "labels": {keys.driver_name: driver} if labels is None else labels,
        "uid": f"uid-{name}",
    }
    if annotations is not None:
        metadata["annotations"] = annotations
    if finalizers:
        metadata["finalizers"] = finalizers
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp
    obj = {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": CRD_KIND,
        "metadata": metadata,
        "spec": {
            "driverName": driver,
            "action": "",
            "remoteClusterId": remote_cluster_id,
            "protectionGroupId": pg_id,
            "protectionGroupAttributes": {"powerflex/systemName": "sys-a"},
            "remoteProtectionGroupId": remote_pg_id,
            "remoteProtectionGroupAttributes": {"powerflex/systemName": "sys-b"},
        },
    }
    if last_action is not None or conditions:
        obj["status"] = {
            "conditions": conditions if conditions is not None else [{"condition": "READY"}],
            "lastAction": last_action or {},
        }
    return obj


@pytest.fixture
def keys():
    return Keys()


@pytest.fixture
def local():
    return FakeClusterClient("cluster-a")


@pytest.fixture
def remote():
    return FakeClusterClient("cluster-b")


@pytest.fixture
def connections(local, remote):
    return FakeConnections("cluster-a", local, {"cluster-b": remote})


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def reconciler(local, connections, recorder, keys):
    from internal.replication.reconciler import ReplicationGroupReconciler
    return ReplicationGroupReconciler(local, connections, recorder, keys)
