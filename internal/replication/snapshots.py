"""Snapshot materialization on the remote cluster.

For a CREATE_SNAPSHOT action the driver reports volume-handle ->
snapshot-handle pairs in ``status.lastAction.actionAttributes``. For each
pair this module provisions, on the remote cluster:

  1. the target namespace (from the action annotation), if absent
  2. a snapshot class (operator override, or a per-driver default)
  3. a VolumeSnapshotContent bound to the snapshot handle
  4. a VolumeSnapshot referencing that content
  5. optionally, a claim restored from the snapshot

A failure on one pair aborts the remaining pairs.
"""

import json
import logging
import time

from internal.k8s.client import ConflictError, K8sClientError, NotFoundError
from internal.k8s.manifests import (
    build_claim_from_snapshot, build_namespace, build_snapshot, build_snapshot_class,
    build_snapshot_content, build_snapshot_reference, default_snapshot_class_name,
)
from internal.models.types import ActionAnnotation, Keys, ReplicationGroup
from internal.replication.errors import ActionPayloadError, SnapshotError

logger = logging.getLogger(__name__)

CLONED_NAMESPACE_PREFIX = "cloned-"


def parse_action_annotation(rg: ReplicationGroup, keys: Keys):
    """Decode the action annotation. Returns None when the group has none."""
    raw = rg.annotation(keys.action)
    if not raw:
        return None
    try:
        return ActionAnnotation.from_dict(json.loads(raw))
    except ValueError as e:
        logger.error("Malformed action annotation on %s: %s", rg.name, e)
        raise ActionPayloadError(f"cannot decode action annotation on {rg.name}: {e}") from e


class SnapshotMaterializer:
    def __init__(self, local, keys: Keys, clock=time.time):
        self.local = local
        self.keys = keys
        self._clock = clock

    def materialize(self, rg: ReplicationGroup, remote) -> list:
        """Create the snapshots for ``rg``'s last action on ``remote``.

        Returns the names of the VolumeSnapshots created.

        Raises:
            ActionPayloadError: the action annotation is malformed.
            SnapshotError: a remote step failed.
        """
        payload = parse_action_annotation(rg, self.keys)
        if payload is None:
            logger.info("No action annotation on %s, nothing to snapshot", rg.name)
            return []

        namespace = payload.snapshot_namespace
        if not namespace:
            raise SnapshotError(f"action on {rg.name} does not name a snapshot namespace")
        self._ensure_namespace(remote, namespace)

        snapshot_class = self._resolve_snapshot_class(rg, remote)
        class_name = snapshot_class["metadata"]["name"]

        storage_class = rg.annotation(self.keys.snapshot_storage_class)
        create_claims = (
            rg.annotation(self.keys.snapshot_create_pvc) == "true" and bool(storage_class)
        )

        created = []
        for volume_handle, snapshot_handle in rg.status.last_action.action_attributes.items():
            logger.info("Action attributes on %s - volumeHandle: %s, snapshotHandle: %s",
                        rg.name, volume_handle, snapshot_handle)

            source_claim = None
            if create_claims:
                try:
                    source_claim = self.find_source_claim(rg, volume_handle)
                except K8sClientError as e:
                    logger.error("Unable to get claim information for volume %s: %s",
                                 volume_handle, e)

            target_namespace = namespace
            if source_claim is not None and source_claim["metadata"].get("namespace") == namespace:
                target_namespace = CLONED_NAMESPACE_PREFIX + namespace
                logger.info("Claim %s lives in %s, restoring into %s",
                            source_claim["metadata"]["name"], namespace, target_namespace)
                self._ensure_namespace(remote, target_namespace)

            snapshot_ref = build_snapshot_reference(snapshot_handle, target_namespace)
            content = build_snapshot_content(
                snapshot_handle, volume_handle, snapshot_ref, snapshot_class, now=self._clock(),
            )
            self._create(remote.create_snapshot_content, content, "snapshot content")

            snapshot = build_snapshot(
                snapshot_ref["name"], content["metadata"]["name"], class_name, target_namespace,
            )
            self._create(remote.create_snapshot, snapshot, "snapshot")
            created.append(snapshot_ref["name"])

            if source_claim is None:
                continue
            if self._replication_enabled(remote, storage_class):
                logger.error("Storage class %s has replication enabled, claim %s not created",
                             storage_class, source_claim["metadata"]["name"])
                continue

            claim = build_claim_from_snapshot(
                source_claim["metadata"]["name"], target_namespace, snapshot_ref["name"],
                storage_class, source_claim.get("spec") or {},
            )
            self._create(remote.create_persistent_volume_claim, claim, "claim")
            logger.info("Created claim %s in namespace %s from snapshot",
                        claim["metadata"]["name"], target_namespace)

        return created

    def find_source_claim(self, rg: ReplicationGroup, volume_handle: str):
        """Find the local claim whose bound volume has ``volume_handle``."""
        selector = f"{self.keys.replication_group_label}={rg.name}"
        for claim in self.local.list_persistent_volume_claims(selector):
            volume_name = (claim.get("spec") or {}).get("volumeName")
            if not volume_name:
                continue
            volume = self.local.get_persistent_volume(volume_name)
            csi = (volume.get("spec") or {}).get("csi") or {}
            if csi.get("volumeHandle") == volume_handle:
                logger.info("Found claim %s with volume %s", claim["metadata"]["name"], volume_name)
                return claim
        return None

    def _resolve_snapshot_class(self, rg: ReplicationGroup, remote) -> dict:
        override = rg.annotation(self.keys.snapshot_class)
        if override:
            try:
                return remote.get_snapshot_class(override)
            except K8sClientError as e:
                logger.error("User defined snapshot class %s does not exist: %s", override, e)
                raise SnapshotError(f"snapshot class {override} unavailable: {e}") from e

        driver = rg.labels.get(self.keys.driver_name, "")
        name = default_snapshot_class_name(driver)
        try:
            return remote.get_snapshot_class(name)
        except NotFoundError:
            logger.info("Snapshot class %s not found, creating a default class", name)
        except K8sClientError as e:
            raise SnapshotError(f"error getting snapshot class {name}: {e}") from e

        manifest = build_snapshot_class(driver, name)
        try:
            remote.create_snapshot_class(manifest)
        except K8sClientError as e:
            raise SnapshotError(f"unable to create default snapshot class {name}: {e}") from e
        return manifest

    def _ensure_namespace(self, remote, namespace: str):
        try:
            remote.get_namespace(namespace)
            return
        except NotFoundError:
            logger.info("Namespace %s not found, creating it", namespace)
        except K8sClientError as e:
            raise SnapshotError(f"unable to get namespace {namespace}: {e}") from e
        try:
            remote.create_namespace(build_namespace(namespace))
        except ConflictError:
            pass
        except K8sClientError as e:
            raise SnapshotError(f"unable to create the desired namespace {namespace}: {e}") from e

    def _replication_enabled(self, remote, storage_class: str) -> bool:
        try:
            sc = remote.get_storage_class(storage_class)
        except K8sClientError:
            return False
        parameters = sc.get("parameters") or {}
        return parameters.get(self.keys.storage_class_replication_param) == "true"

    @staticmethod
    def _create(create, manifest: dict, what: str):
        try:
            create(manifest)
        except K8sClientError as e:
            logger.error("Unable to create %s %s: %s", what, manifest["metadata"]["name"], e)
            raise SnapshotError(f"unable to create {what} {manifest['metadata']['name']}: {e}") from e
