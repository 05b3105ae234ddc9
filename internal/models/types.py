"""Data types for the replication-group controller."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


CRD_GROUP = "replication.storage.dell.com"
CRD_VERSION = "v1"
CRD_PLURAL = "dellcsireplicationgroups"
CRD_KIND = "DellCSIReplicationGroup"

DEFAULT_DOMAIN = "replication.storage.dell.com"
SELF_CLUSTER_ID = "self"
REPLICATED_PREFIX = "replicated"

RETENTION_RETAIN = "retain"
RETENTION_DELETE = "delete"

SNAPSHOT_ACTION_KEYWORD = "CREATE_SNAPSHOT"


@dataclass(frozen=True)
class Keys:
    """Annotation, label and finalizer names under a configurable domain.

    These names are shared with the driver sidecar, with the controller
    running against the opposite cluster and with operators, so they must
    not change.
    """
    domain: str = DEFAULT_DOMAIN

    def _key(self, name: str) -> str:
        return f"{self.domain}/{name}"

    @property
    def remote_replication_group(self) -> str:
        return self._key("remoteReplicationGroupName")

    @property
    def rg_sync_complete(self) -> str:
        return self._key("rgSyncComplete")

    @property
    def retention_policy(self) -> str:
        return self._key("remoteRGRetentionPolicy")

    @property
    def deletion_requested(self) -> str:
        return self._key("deletionRequested")

    @property
    def remote_cluster_id(self) -> str:
        return self._key("remoteClusterID")

    @property
    def context_prefix(self) -> str:
        return self._key("contextPrefix")

    @property
    def driver_name(self) -> str:
        return self._key("driverName")

    @property
    def action_processed_time(self) -> str:
        return self._key("actionProcessedTime")

    @property
    def action(self) -> str:
        return self._key("action")

    @property
    def snapshot_class(self) -> str:
        return self._key("snapshotClass")

    @property
    def snapshot_storage_class(self) -> str:
        return self._key("snapshotStorageClass")

    @property
    def snapshot_create_pvc(self) -> str:
        return self._key("snapshotCreatePVC")

    @property
    def replication_group_label(self) -> str:
        return self._key("replicationGroupName")

    @property
    def storage_class_replication_param(self) -> str:
        return self._key("isReplicationEnabled")

    @property
    def finalizer(self) -> str:
        return self._key("rgFinalizer")


def format_action_time(raw: Optional[str]) -> Optional[str]:
    """Render a serialized lastAction time in the metav1.Time string form.

    ``2024-03-01T10:00:00Z`` becomes ``2024-03-01 10:00:00 +0000 UTC``.
    Values that do not parse are returned unchanged.
    """
    if not raw:
        return raw
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S +0000 UTC")


@dataclass
class LastAction:
    """Result of the last action the driver sidecar executed on the group."""
    condition: str = ""
    time: Optional[str] = None
    error_message: str = ""
    first_failure: Optional[str] = None
    action_attributes: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LastAction":
        data = data or {}
        return cls(
            condition=data.get("condition", ""),
            time=data.get("time"),
            error_message=data.get("errorMessage", ""),
            first_failure=data.get("firstFailure"),
            action_attributes=dict(data.get("actionAttributes") or {}),
        )

    def to_dict(self) -> dict:
        out = {"condition": self.condition}
        if self.time:
            out["time"] = self.time
        if self.error_message:
            out["errorMessage"] = self.error_message
        if self.first_failure:
            out["firstFailure"] = self.first_failure
        if self.action_attributes:
            out["actionAttributes"] = dict(self.action_attributes)
        return out


@dataclass
class ReplicationGroupSpec:
    driver_name: str = ""
    action: str = ""
    remote_cluster_id: str = ""
    protection_group_id: str = ""
    protection_group_attributes: dict = field(default_factory=dict)
    remote_protection_group_id: str = ""
    remote_protection_group_attributes: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ReplicationGroupSpec":
        data = data or {}
        return cls(
            driver_name=data.get("driverName", ""),
            action=data.get("action", ""),
            remote_cluster_id=data.get("remoteClusterId", ""),
            protection_group_id=data.get("protectionGroupId", ""),
            protection_group_attributes=dict(data.get("protectionGroupAttributes") or {}),
            remote_protection_group_id=data.get("remoteProtectionGroupId", ""),
            remote_protection_group_attributes=dict(
                data.get("remoteProtectionGroupAttributes") or {}
            ),
        )

    def to_dict(self) -> dict:
        return {
            "driverName": self.driver_name,
            "action": self.action,
            "remoteClusterId": self.remote_cluster_id,
            "protectionGroupId": self.protection_group_id,
            "protectionGroupAttributes": dict(self.protection_group_attributes),
            "remoteProtectionGroupId": self.remote_protection_group_id,
            "remoteProtectionGroupAttributes": dict(self.remote_protection_group_attributes),
        }


@dataclass
class ReplicationGroupStatus:
    state: str = ""
    remote_state: str = ""
    conditions: list = field(default_factory=list)
    last_action: LastAction = field(default_factory=LastAction)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ReplicationGroupStatus":
        data = data or {}
        return cls(
            state=data.get("state", ""),
            remote_state=data.get("remoteState", ""),
            conditions=list(data.get("conditions") or []),
            last_action=LastAction.from_dict(data.get("lastAction")),
        )

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "remoteState": self.remote_state,
            "conditions": list(self.conditions),
            "lastAction": self.last_action.to_dict(),
        }


@dataclass
class ReplicationGroup:
    """A DellCSIReplicationGroup custom resource.

    ``annotations`` is None when the object carries no annotations at all,
    which means its creator has not initialized it yet.
    """
    name: str
    spec: ReplicationGroupSpec = field(default_factory=ReplicationGroupSpec)
    status: ReplicationGroupStatus = field(default_factory=ReplicationGroupStatus)
    annotations: Optional[dict] = None
    labels: dict = field(default_factory=dict)
    finalizers: list = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    resource_version: str = ""
    uid: str = ""
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, obj: dict) -> "ReplicationGroup":
        meta = obj.get("metadata") or {}
        annotations = meta.get("annotations")
        return cls(
            name=meta.get("name", ""),
            spec=ReplicationGroupSpec.from_dict(obj.get("spec")),
            status=ReplicationGroupStatus.from_dict(obj.get("status")),
            annotations=dict(annotations) if annotations is not None else None,
            labels=dict(meta.get("labels") or {}),
            finalizers=list(meta.get("finalizers") or []),
            deletion_timestamp=meta.get("deletionTimestamp"),
            resource_version=meta.get("resourceVersion", ""),
            uid=meta.get("uid", ""),
            raw=copy.deepcopy(obj),
        )

    def to_dict(self) -> dict:
        """Serialize back to a manifest, keeping fields this model does not know."""
        obj = copy.deepcopy(self.raw)
        obj["apiVersion"] = f"{CRD_GROUP}/{CRD_VERSION}"
        obj["kind"] = CRD_KIND
        meta = obj.setdefault("metadata", {})
        meta["name"] = self.name
        if self.annotations is not None:
            meta["annotations"] = dict(self.annotations)
        else:
            meta.pop("annotations", None)
        meta["labels"] = dict(self.labels)
        if self.finalizers:
            meta["finalizers"] = list(self.finalizers)
        else:
            meta.pop("finalizers", None)
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        else:
            meta.pop("resourceVersion", None)
        obj["spec"] = self.spec.to_dict()
        if "status" in obj or self.status.conditions or self.status.last_action.time:
            status = obj.get("status") or {}
            status.update(self.status.to_dict())
            obj["status"] = status
        return obj

    def deep_copy(self) -> "ReplicationGroup":
        return copy.deepcopy(self)

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    def annotation(self, key: str, default: str = "") -> str:
        return (self.annotations or {}).get(key, default)

    def has_annotation(self, key: str) -> bool:
        return key in (self.annotations or {})

    def add_annotation(self, key: str, value: str):
        if self.annotations is None:
            self.annotations = {}
        self.annotations[key] = value

    def add_finalizer_if_not_exist(self, finalizer: str) -> bool:
        """Add the finalizer. Returns True if the object changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer_if_exists(self, finalizer: str) -> bool:
        """Remove the finalizer. Returns True if the object changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


@dataclass
class ActionAnnotation:
    """JSON payload the driver sidecar stores in the ``<domain>/action`` annotation."""
    action_name: str = ""
    completed: bool = False
    final_error: str = ""
    finish_time: str = ""
    protection_group_id: str = ""
    snapshot_namespace: str = ""
    snapshot_class: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ActionAnnotation":
        if not isinstance(data, dict):
            raise ValueError("action annotation must be a JSON object")
        return cls(
            action_name=data.get("name", ""),
            completed=bool(data.get("completed", False)),
            final_error=data.get("finalError", ""),
            finish_time=data.get("finishTime", ""),
            protection_group_id=data.get("protectionGroupId", ""),
            snapshot_namespace=data.get("snapshotNamespace", ""),
            snapshot_class=data.get("snapshotClass", ""),
        )


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass.

    ``requeue`` asks for a retry with exponential back-off,
    ``requeue_after`` for a retry after a fixed delay in seconds.
    """
    requeue: bool = False
    requeue_after: float = 0.0

    @property
    def done(self) -> bool:
        return not self.requeue and not self.requeue_after
