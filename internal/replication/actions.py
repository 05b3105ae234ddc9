import logging

from internal.k8s.client import K8sClientError
from internal.models.types import SNAPSHOT_ACTION_KEYWORD, Keys, ReplicationGroup, format_action_time
from internal.replication.errors import ActionPayloadError, LastActionFailedError, SnapshotError

logger = logging.getLogger(__name__)


class ActionProcessor:
    """Dispatches work for the last action the driver reported on a group.

    Each distinct lastAction timestamp is handled at most once: the
    timestamp is stamped into the ActionProcessedTime annotation whether
    or not the dispatched workflow succeeded. Only an undecodable action
    payload leaves it unstamped.
    """

    def __init__(self, local, materializer, keys: Keys):
        self.local = local
        self.materializer = materializer
        self.keys = keys

    def process(self, rg: ReplicationGroup, remote) -> bool:
        """Returns True if the action was processed on this call."""
        last_action = rg.status.last_action
        if not rg.status.conditions or not last_action.time:
            logger.info("No action to process on %s", rg.name)
            return False

        if last_action.error_message:
            raise LastActionFailedError(f"last action failed: {last_action.condition}")

        action_time = format_action_time(last_action.time)
        if not rg.has_annotation(self.keys.action_processed_time):
            logger.info("Action processed annotation does not exist on %s yet", rg.name)
            return False
        if rg.annotation(self.keys.action_processed_time) == action_time:
            logger.debug("Last action on %s has already been processed", rg.name)
            return False

        failure = None
        if SNAPSHOT_ACTION_KEYWORD in last_action.condition:
            try:
                created = self.materializer.materialize(rg, remote)
                logger.info("Created %d snapshot(s) for %s", len(created), rg.name)
            except ActionPayloadError:
                raise
            except SnapshotError as e:
                logger.error("Snapshot processing failed for %s: %s", rg.name, e)
                failure = e

        rg.add_annotation(self.keys.action_processed_time, action_time)
        try:
            updated = self.local.update_replication_group(rg)
            rg.resource_version = updated.resource_version
        except K8sClientError as e:
            logger.error("Unable to record processed action on %s: %s", rg.name, e)
            if failure is None:
                failure = e

        if failure is not None:
            raise failure
        return True
