"""Kubernetes Event recording for replication groups.

Replication groups are cluster scoped, so their events land in the
``default`` namespace with the group as the involved object.
"""

import logging
import uuid
from datetime import datetime, timezone

from internal.k8s.client import K8sClientError
from internal.models.types import CRD_GROUP, CRD_KIND, CRD_VERSION, ReplicationGroup

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
EVENT_REASON_UPDATED = "Updated"

EVENT_NAMESPACE = "default"
COMPONENT = "replication-controller"


class EventRecorder:
    def __init__(self, cluster_client, component: str = COMPONENT):
        self._client = cluster_client
        self._component = component

    def event(self, rg: ReplicationGroup, event_type: str, reason: str, message: str):
        """Record an event. Failures are logged and swallowed."""
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        manifest = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{rg.name}.{uuid.uuid4().hex[:16]}",
                "namespace": EVENT_NAMESPACE,
            },
            "involvedObject": {
                "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
                "kind": CRD_KIND,
                "name": rg.name,
                "uid": rg.uid,
                "resourceVersion": rg.resource_version,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self._component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self._client.create_event(EVENT_NAMESPACE, manifest)
        except K8sClientError as e:
            logger.warning("Could not record %s event for %s: %s", event_type, rg.name, e)

    def normal(self, rg: ReplicationGroup, message: str):
        self.event(rg, EVENT_TYPE_NORMAL, EVENT_REASON_UPDATED, message)

    def warning(self, rg: ReplicationGroup, message: str):
        self.event(rg, EVENT_TYPE_WARNING, EVENT_REASON_UPDATED, message)
