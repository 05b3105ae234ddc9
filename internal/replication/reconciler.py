"""Mirror synchronization for DellCSIReplicationGroup resources.

One pass, in order:
  1. load the local group (gone or uninitialized: nothing to do)
  2. deletion: deletion handshake with the remote mirror, then drop the finalizer
  3. ensure the finalizer (persisting it ends the pass)
  4. a deletion-requested annotation on a live group deletes it
  5. look up the remote mirror: create it, verify its provenance, or stop on conflict
  6. record the mirror name and sync flag (persisting it ends the pass)
  7. process the last action once sync is complete

All durable progress lives in the group's annotations, so a pass can be
abandoned at any point and the next one resumes from the stored object.
"""

import logging

from internal.k8s.client import ConflictError, K8sClientError, NotFoundError
from internal.k8s.manifests import (
    build_remote_replication_group, cluster_qualified_name, mirror_name,
)
from internal.models.types import (
    REPLICATED_PREFIX, SELF_CLUSTER_ID, Keys, ReconcileResult, ReplicationGroup,
)
from internal.replication.actions import ActionProcessor
from internal.replication.errors import ReplicationError
from internal.replication.retention import should_delete_remote
from internal.replication.snapshots import SnapshotMaterializer

logger = logging.getLogger(__name__)

# Short delay after asking the remote mirror to delete itself.
DELETION_POLL_DELAY = 0.001


class ReplicationGroupReconciler:
    def __init__(self, local, connections, recorder, keys: Keys = None,
                 action_processor: ActionProcessor = None):
        self.local = local
        self.connections = connections
        self.recorder = recorder
        self.keys = keys or Keys()
        self.actions = action_processor or ActionProcessor(
            local, SnapshotMaterializer(local, self.keys), self.keys,
        )

    def reconcile(self, name: str) -> ReconcileResult:
        """Run one pass for the group ``name``.

        Raises:
            K8sClientError: on transient API failures; the caller retries with back-off.
        """
        try:
            local_rg = self.local.get_replication_group(name)
        except NotFoundError:
            logger.debug("Replication group %s no longer exists", name)
            return ReconcileResult()

        logger.info("Reconciling replication group %s", name)
        if local_rg.annotations is None:
            logger.info("Replication group %s is not ready yet, waiting for the next event", name)
            return ReconcileResult()

        keys = self.keys
        sync_complete = local_rg.annotation(keys.rg_sync_complete) == "yes"
        if sync_complete:
            logger.debug("Replication group %s already synced, re-verifying", name)

        remote_cluster_id = local_rg.spec.remote_cluster_id
        local_cluster_id = self.connections.get_cluster_id()
        if remote_cluster_id == SELF_CLUSTER_ID:
            local_cluster_id = SELF_CLUSTER_ID
        remote_name = mirror_name(local_rg, keys)

        remote = self.connections.get_connection(remote_cluster_id)

        if local_rg.is_being_deleted:
            return self._handle_deletion(local_rg, remote, remote_name)

        rg = local_rg.deep_copy()
        if rg.add_finalizer_if_not_exist(keys.finalizer):
            logger.info("Finalizer not found on %s, adding it", name)
            self.local.update_replication_group(rg)
            return ReconcileResult()

        if rg.has_annotation(keys.deletion_requested):
            logger.info("Deletion requested annotation found on %s, deleting it", name)
            self.local.delete_replication_group(rg)
            return ReconcileResult()

        desired = build_remote_replication_group(local_rg, remote_name, local_cluster_id, keys)

        logger.info("Checking if remote replication group %s exists on cluster %s",
                    remote_name, remote_cluster_id)
        try:
            existing = remote.get_replication_group(remote_name)
        except NotFoundError:
            existing = None

        create = False
        renamed = False
        if existing is None:
            if sync_complete:
                logger.error(
                    "Replication group %s not found on cluster %s although %s carries the "
                    "sync-complete annotation; it will not be recreated",
                    remote_name, remote_cluster_id, name,
                )
                return ReconcileResult()
            if "replicated-replicated" in remote_name:
                logger.info("Skipping creation of %s to avoid recursive self-replication",
                            remote_name)
            else:
                create = True
        elif existing.spec.remote_cluster_id == local_cluster_id:
            if existing.spec.driver_name != desired.spec.driver_name:
                remote_name = cluster_qualified_name(local_cluster_id, name)
                desired.name = remote_name
                create = True
                renamed = True
                sync_complete = False
            elif not _same_protection_groups(existing, desired):
                self.recorder.warning(
                    local_rg, f"Found conflicting RG on remote ClusterId: {remote_cluster_id}",
                )
                logger.error("Conflicting replication group %s exists on cluster %s, "
                             "stopping reconcile", remote_name, remote_cluster_id)
                return ReconcileResult()
        else:
            logger.info("Replication group %s on cluster %s belongs to cluster %s",
                        remote_name, remote_cluster_id, existing.spec.remote_cluster_id)
            remote_name = cluster_qualified_name(local_cluster_id, name)
            desired.name = remote_name
            create = True
            renamed = True
            sync_complete = False

        if create:
            self._create_mirror(local_rg, remote, desired, remote_cluster_id)

        if not sync_complete:
            recorded = remote_name
            self_prefix = REPLICATED_PREFIX + "-"
            if remote_cluster_id == SELF_CLUSTER_ID and not renamed and name.startswith(self_prefix):
                # the mirror of a self-replicated group points back at its source
                recorded = name.removeprefix(self_prefix)
            rg.add_annotation(keys.remote_replication_group, recorded)
            rg.add_annotation(keys.rg_sync_complete, "yes")
            self.local.update_replication_group(rg)
            return ReconcileResult()

        try:
            self.actions.process(rg, remote)
        except (ReplicationError, K8sClientError) as e:
            logger.warning("Failed to process the last action on %s: %s", name, e)
            self.recorder.warning(
                local_rg, f"failed to process the last action {local_rg.status.last_action.condition}",
            )

        logger.info("Replication group %s has already been synced to cluster %s",
                    name, remote_cluster_id)
        return ReconcileResult()

    def _handle_deletion(self, rg: ReplicationGroup, remote, remote_name: str) -> ReconcileResult:
        keys = self.keys
        logger.info("Replication group %s is being deleted", rg.name)

        if not rg.has_annotation(keys.deletion_requested):
            target = rg.annotation(keys.remote_replication_group) or remote_name
            try:
                mirror = remote.get_replication_group(target)
            except NotFoundError:
                logger.info("Remote replication group %s not found, nothing to hand off", target)
                mirror = None

            if mirror is not None and should_delete_remote(rg, keys):
                if not mirror.has_annotation(keys.deletion_requested):
                    logger.info("Requesting deletion of remote replication group %s", target)
                    mirror.add_annotation(keys.deletion_requested, "yes")
                    remote.update_replication_group(mirror)
                    return ReconcileResult(requeue_after=DELETION_POLL_DELAY)
                logger.info("Waiting for remote replication group %s to be deleted", target)
                return ReconcileResult(requeue=True)

        if rg.remove_finalizer_if_exists(keys.finalizer):
            logger.info("Removing finalizer from %s", rg.name)
            self.local.update_replication_group(rg)
        return ReconcileResult()

    def _create_mirror(self, local_rg: ReplicationGroup, remote, desired: ReplicationGroup,
                       remote_cluster_id: str):
        try:
            remote.create_replication_group(desired)
        except ConflictError:
            # Created by an earlier pass that did not get to record it.
            existing = remote.get_replication_group(desired.name)
            if (existing.spec.remote_cluster_id == desired.spec.remote_cluster_id
                    and existing.spec.driver_name == desired.spec.driver_name
                    and _same_protection_groups(existing, desired)):
                logger.info("Remote replication group %s already exists", desired.name)
                return
            self._creation_failed(local_rg, remote_cluster_id)
            raise
        except K8sClientError:
            self._creation_failed(local_rg, remote_cluster_id)
            raise
        logger.info("Created remote replication group %s on cluster %s",
                    desired.name, remote_cluster_id)
        self.recorder.normal(
            local_rg,
            f"Created remote ReplicationGroup with name: {desired.name} on cluster: {remote_cluster_id}",
        )

    def _creation_failed(self, local_rg: ReplicationGroup, remote_cluster_id: str):
        logger.error("Failed to create remote replication group for %s", local_rg.name)
        self.recorder.warning(
            local_rg,
            "Failed to create remote CR for DellCSIReplicationGroup on ClusterId: "
            f"{remote_cluster_id}",
        )


def _same_protection_groups(existing: ReplicationGroup, desired: ReplicationGroup) -> bool:
    return (existing.spec.protection_group_id == desired.spec.protection_group_id
            and existing.spec.remote_protection_group_id == desired.spec.remote_protection_group_id)
