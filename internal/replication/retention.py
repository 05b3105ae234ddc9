import logging

from internal.models.types import RETENTION_DELETE, RETENTION_RETAIN, Keys, ReplicationGroup

logger = logging.getLogger(__name__)


def retention_policy(rg: ReplicationGroup, keys: Keys) -> str:
    """Return ``delete`` or ``retain`` for the group's remote mirror.

    Only an explicit (case-insensitive) ``delete`` deletes the mirror; a
    missing or unrecognized value retains it.
    """
    if not rg.has_annotation(keys.retention_policy):
        logger.info("Retention policy not set on %s, using %s as the default",
                    rg.name, RETENTION_RETAIN)
        return RETENTION_RETAIN
    value = rg.annotation(keys.retention_policy)
    if value.lower() == RETENTION_DELETE:
        return RETENTION_DELETE
    return RETENTION_RETAIN


def should_delete_remote(rg: ReplicationGroup, keys: Keys) -> bool:
    return retention_policy(rg, keys) == RETENTION_DELETE
