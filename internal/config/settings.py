"""Controller settings.

Read from a YAML file (``REPLICATION_CONFIG_PATH``, default
``config/controller.yaml``) and overridden by environment variables:

  REPLICATION_DOMAIN           annotation/label domain
  REPLICATION_CLUSTER_ID       id of the cluster this controller runs in
  REPLICATION_MAX_RECONCILERS  concurrent reconciles
  REPLICATION_RETRY_START      first back-off delay, seconds
  REPLICATION_RETRY_MAX        back-off ceiling, seconds
  REPLICATION_RESYNC_SECONDS   period of the full resync
  REPLICATION_STATUS_PORT      port of the health/status HTTP server
  REPLICATION_LOG_LEVEL        logging level name

Example file::

    clusterId: cluster-a
    domain: replication.storage.dell.com
    maxReconcilers: 4
    targets:
      - clusterId: cluster-b
        kubeconfig: /etc/replication/cluster-b.kubeconfig
"""

import logging
import os
from dataclasses import dataclass, field

import yaml

from internal.models.types import DEFAULT_DOMAIN

DEFAULT_CONFIG_PATH = "config/controller.yaml"


class ConfigError(Exception):
    pass


@dataclass
class Settings:
    cluster_id: str = ""
    domain: str = DEFAULT_DOMAIN
    targets: dict = field(default_factory=dict)  # cluster id -> kubeconfig path
    max_reconcilers: int = 1
    retry_interval_start: float = 1.0
    retry_interval_max: float = 300.0
    resync_period: float = 600.0
    status_port: int = 8081
    log_level: str = "INFO"

    def validate(self) -> list:
        """Return a list of validation errors (empty if valid)."""
        errors = []
        if not self.domain:
            errors.append("domain is required")
        if self.max_reconcilers < 1:
            errors.append("maxReconcilers must be at least 1")
        if self.retry_interval_start <= 0:
            errors.append("retryIntervalStart must be positive")
        if self.retry_interval_max < self.retry_interval_start:
            errors.append("retryIntervalMax must not be below retryIntervalStart")
        if self.resync_period <= 0:
            errors.append("resyncPeriod must be positive")
        if not 0 < self.status_port < 65536:
            errors.append("statusPort must be a valid TCP port")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            errors.append(f"unknown logLevel '{self.log_level}'")
        return errors


_FILE_KEYS = {
    "clusterId": ("cluster_id", str),
    "domain": ("domain", str),
    "maxReconcilers": ("max_reconcilers", int),
    "retryIntervalStart": ("retry_interval_start", float),
    "retryIntervalMax": ("retry_interval_max", float),
    "resyncPeriod": ("resync_period", float),
    "statusPort": ("status_port", int),
    "logLevel": ("log_level", str),
}

_ENV_KEYS = {
    "REPLICATION_CLUSTER_ID": ("cluster_id", str),
    "REPLICATION_DOMAIN": ("domain", str),
    "REPLICATION_MAX_RECONCILERS": ("max_reconcilers", int),
    "REPLICATION_RETRY_START": ("retry_interval_start", float),
    "REPLICATION_RETRY_MAX": ("retry_interval_max", float),
    "REPLICATION_RESYNC_SECONDS": ("resync_period", float),
    "REPLICATION_STATUS_PORT": ("status_port", int),
    "REPLICATION_LOG_LEVEL": ("log_level", str),
}


def _convert(source: str, value, kind):
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {source}: {value!r}") from e


def load_settings(path: str | None = None, environ=None) -> Settings:
    """Load settings from YAML and the environment.

    A missing file yields defaults; environment variables always win.
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get("REPLICATION_CONFIG_PATH", DEFAULT_CONFIG_PATH)
    settings = Settings()

    data = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: config root must be a mapping")

    for key, (attr, kind) in _FILE_KEYS.items():
        if key in data:
            setattr(settings, attr, _convert(key, data[key], kind))

    for target in data.get("targets") or []:
        if not isinstance(target, dict) or not target.get("clusterId") or not target.get("kubeconfig"):
            raise ConfigError(f"{path}: each target needs clusterId and kubeconfig")
        settings.targets[str(target["clusterId"])] = str(target["kubeconfig"])

    for var, (attr, kind) in _ENV_KEYS.items():
        if environ.get(var):
            setattr(settings, attr, _convert(var, environ[var], kind))

    errors = settings.validate()
    if errors:
        raise ConfigError(f"invalid controller settings: {errors}")
    return settings
