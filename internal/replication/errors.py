class ReplicationError(Exception):
    pass


class LastActionFailedError(ReplicationError):
    """The driver reported an error for the last action; nothing is derived from it."""


class ActionPayloadError(ReplicationError):
    """The action annotation could not be decoded. The action stays unprocessed."""


class SnapshotError(ReplicationError):
    """A step of snapshot materialization failed. Remaining volume pairs are abandoned."""
