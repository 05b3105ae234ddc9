"""Kubernetes access for the replication-group controller.

Handles:
  - DellCSIReplicationGroup CRUD via the custom objects API
  - Namespaces, persistent volume claims and persistent volumes (core/v1)
  - VolumeSnapshotClass / VolumeSnapshotContent / VolumeSnapshot CRUD
  - StorageClass lookups (storage.k8s.io/v1)
  - Resolving a cluster id to a client (in-cluster for "self", kubeconfig otherwise)

Objects cross this boundary as plain dict manifests. Client errors are
translated into K8sClientError / NotFoundError / ConflictError.
"""

import logging
import threading
from typing import Optional

from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException

from internal.models.types import (
    CRD_GROUP, CRD_VERSION, CRD_PLURAL, SELF_CLUSTER_ID, ReplicationGroup,
)

logger = logging.getLogger(__name__)

SNAP_GROUP = "snapshot.storage.k8s.io"
SNAP_VERSION = "v1"
SNAPSHOT_CLASS_PLURAL = "volumesnapshotclasses"
SNAPSHOT_CONTENT_PLURAL = "volumesnapshotcontents"
SNAPSHOT_PLURAL = "volumesnapshots"


class K8sClientError(Exception):
    pass


class NotFoundError(K8sClientError):
    pass


class ConflictError(K8sClientError):
    pass


def _translate(exc: ApiException, what: str) -> K8sClientError:
    if exc.status == 404:
        return NotFoundError(f"{what} not found")
    if exc.status == 409:
        return ConflictError(f"conflict on {what}: {exc.reason}")
    return K8sClientError(f"request for {what} failed ({exc.status}): {exc.reason}")


class ClusterClient:
    """CRUD for the resources the controller touches on one cluster.

    The same class serves as the local object store and as a remote
    cluster client; only the ApiClient it wraps differs.
    """

    def __init__(self, cluster_id: str, api_client):
        self.cluster_id = cluster_id
        self._api_client = api_client
        self._core = k8s_client.CoreV1Api(api_client)
        self._custom = k8s_client.CustomObjectsApi(api_client)
        self._storage = k8s_client.StorageV1Api(api_client)

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    # ── Replication groups ───────────────────────────────────────────────

    def get_replication_group(self, name: str) -> ReplicationGroup:
        try:
            obj = self._custom.get_cluster_custom_object(
                CRD_GROUP, CRD_VERSION, CRD_PLURAL, name,
            )
        except ApiException as e:
            raise _translate(e, f"replication group {name}") from e
        return ReplicationGroup.from_dict(obj)

    def list_replication_groups(self) -> list:
        try:
            result = self._custom.list_cluster_custom_object(
                CRD_GROUP, CRD_VERSION, CRD_PLURAL,
            )
        except ApiException as e:
            raise _translate(e, "replication groups") from e
        return [ReplicationGroup.from_dict(item) for item in result.get("items", [])]

    def create_replication_group(self, rg: ReplicationGroup) -> ReplicationGroup:
        body = rg.to_dict()
        body["metadata"].pop("resourceVersion", None)
        try:
            obj = self._custom.create_cluster_custom_object(
                CRD_GROUP, CRD_VERSION, CRD_PLURAL, body,
            )
        except ApiException as e:
            raise _translate(e, f"replication group {rg.name}") from e
        return ReplicationGroup.from_dict(obj)

    def update_replication_group(self, rg: ReplicationGroup) -> ReplicationGroup:
        """Replace the object; a stale resourceVersion raises ConflictError."""
        try:
            obj = self._custom.replace_cluster_custom_object(
                CRD_GROUP, CRD_VERSION, CRD_PLURAL, rg.name, rg.to_dict(),
            )
        except ApiException as e:
            raise _translate(e, f"replication group {rg.name}") from e
        return ReplicationGroup.from_dict(obj)

    def delete_replication_group(self, rg: ReplicationGroup):
        try:
            self._custom.delete_cluster_custom_object(
                CRD_GROUP, CRD_VERSION, CRD_PLURAL, rg.name,
            )
        except ApiException as e:
            raise _translate(e, f"replication group {rg.name}") from e

    # ── Namespaces ───────────────────────────────────────────────────────

    def get_namespace(self, name: str) -> dict:
        try:
            return self._to_dict(self._core.read_namespace(name))
        except ApiException as e:
            raise _translate(e, f"namespace {name}") from e

    def create_namespace(self, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        try:
            return self._to_dict(self._core.create_namespace(manifest))
        except ApiException as e:
            raise _translate(e, f"namespace {name}") from e

    # ── Snapshots ────────────────────────────────────────────────────────

    def get_snapshot_class(self, name: str) -> dict:
        try:
            return self._custom.get_cluster_custom_object(
                SNAP_GROUP, SNAP_VERSION, SNAPSHOT_CLASS_PLURAL, name,
            )
        except ApiException as e:
            raise _translate(e, f"snapshot class {name}") from e

    def create_snapshot_class(self, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        try:
            return self._custom.create_cluster_custom_object(
                SNAP_GROUP, SNAP_VERSION, SNAPSHOT_CLASS_PLURAL, manifest,
            )
        except ApiException as e:
            raise _translate(e, f"snapshot class {name}") from e

    def create_snapshot_content(self, manifest: dict) -> dict:
        name = manifest["metadata"]["name"]
        try:
            return self._custom.create_cluster_custom_object(
                SNAP_GROUP, SNAP_VERSION, SNAPSHOT_CONTENT_PLURAL, manifest,
            )
        except ApiException as e:
            raise _translate(e, f"snapshot content {name}") from e

    def create_snapshot(self, manifest: dict) -> dict:
        meta = manifest["metadata"]
        try:
            return self._custom.create_namespaced_custom_object(
                SNAP_GROUP, SNAP_VERSION, meta["namespace"], SNAPSHOT_PLURAL, manifest,
            )
        except ApiException as e:
            raise _translate(e, f"snapshot {meta['namespace']}/{meta['name']}") from e

    # ── Storage ──────────────────────────────────────────────────────────

    def get_storage_class(self, name: str) -> dict:
        try:
            return self._to_dict(self._storage.read_storage_class(name))
        except ApiException as e:
            raise _translate(e, f"storage class {name}") from e

    def create_persistent_volume_claim(self, manifest: dict) -> dict:
        meta = manifest["metadata"]
        try:
            return self._to_dict(
                self._core.create_namespaced_persistent_volume_claim(meta["namespace"], manifest)
            )
        except ApiException as e:
            raise _translate(e, f"claim {meta['namespace']}/{meta['name']}") from e

    def list_persistent_volume_claims(self, label_selector: str) -> list:
        try:
            result = self._core.list_persistent_volume_claim_for_all_namespaces(
                label_selector=label_selector,
            )
        except ApiException as e:
            raise _translate(e, f"claims matching {label_selector}") from e
        return self._to_dict(result).get("items", [])

    def get_persistent_volume(self, name: str) -> dict:
        try:
            return self._to_dict(self._core.read_persistent_volume(name))
        except ApiException as e:
            raise _translate(e, f"volume {name}") from e

    # ── Events ───────────────────────────────────────────────────────────

    def create_event(self, namespace: str, manifest: dict) -> dict:
        try:
            return self._to_dict(self._core.create_namespaced_event(namespace, manifest))
        except ApiException as e:
            raise _translate(e, f"event in {namespace}") from e


def load_local_api_client():
    """Load in-cluster configuration, falling back to the default kubeconfig."""
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config()
            logger.info("Loaded kubeconfig from default location")
        except k8s_config.ConfigException as exc:
            raise K8sClientError(f"Unable to load Kubernetes configuration: {exc}") from exc
    return k8s_client.ApiClient()


class MultiClusterClient:
    """Resolves cluster ids to ClusterClient handles.

    ``self`` and the local cluster id resolve to the local client; other ids
    are built lazily from their kubeconfig file and cached.
    """

    def __init__(self, cluster_id: str, local: ClusterClient,
                 kubeconfigs: Optional[dict] = None, client_factory=None):
        self._cluster_id = cluster_id
        self._local = local
        self._kubeconfigs = dict(kubeconfigs or {})
        self._client_factory = client_factory or self._client_from_kubeconfig
        self._clients = {}
        self._lock = threading.Lock()

    def get_cluster_id(self) -> str:
        return self._cluster_id

    def get_connection(self, cluster_id: str) -> ClusterClient:
        if cluster_id in (SELF_CLUSTER_ID, self._cluster_id):
            return self._local
        with self._lock:
            cached = self._clients.get(cluster_id)
            if cached is not None:
                return cached
            path = self._kubeconfigs.get(cluster_id)
            if not path:
                raise K8sClientError(f"no connection configured for cluster '{cluster_id}'")
            remote = self._client_factory(cluster_id, path)
            self._clients[cluster_id] = remote
            logger.info("Connected to remote cluster %s", cluster_id)
            return remote

    @staticmethod
    def _client_from_kubeconfig(cluster_id: str, path: str) -> ClusterClient:
        try:
            api_client = k8s_config.new_client_from_config(config_file=path)
        except (k8s_config.ConfigException, OSError) as exc:
            raise K8sClientError(
                f"Unable to load kubeconfig {path} for cluster '{cluster_id}': {exc}"
            ) from exc
        return ClusterClient(cluster_id, api_client)
