from __future__ import annotations

import logging
import os
import sys
import threading
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import kopf
from flask import Flask

from internal.config.settings import ConfigError, Settings, load_settings
from internal.controller.operator import ReplicationGroupOperator
from internal.handlers.status import status_bp
from internal.k8s.client import (
    ClusterClient, K8sClientError, MultiClusterClient, load_local_api_client,
)
from internal.k8s.events import EventRecorder
from internal.models.types import Keys
from internal.replication.reconciler import ReplicationGroupReconciler

logger = logging.getLogger("replication-controller")


def create_app(operator: ReplicationGroupOperator | None = None) -> Flask:
    app = Flask(__name__)
    app.config["REPLICATION_OPERATOR"] = operator
    app.register_blueprint(status_bp)
    return app


def build_operator(settings: Settings, api_client) -> ReplicationGroupOperator:
    local = ClusterClient(settings.cluster_id, api_client)
    connections = MultiClusterClient(settings.cluster_id, local, settings.targets)
    keys = Keys(settings.domain)
    reconciler = ReplicationGroupReconciler(local, connections, EventRecorder(local), keys)
    return ReplicationGroupOperator(
        reconciler, keys,
        max_workers=settings.max_reconcilers,
        retry_interval_start=settings.retry_interval_start,
        retry_interval_max=settings.retry_interval_max,
        resync_period=settings.resync_period,
    )


def run() -> None:
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.cluster_id:
        logger.warning("No cluster id configured; only 'self' replication will resolve")

    try:
        api_client = load_local_api_client()
    except K8sClientError as exc:
        logger.error("Kubernetes client unavailable: %s", exc)
        sys.exit(3)

    operator = build_operator(settings, api_client)
    app = create_app(operator)
    port = int(os.getenv("PORT", settings.status_port))
    server = threading.Thread(
        target=lambda: app.run(host="0.0.0.0", port=port, use_reloader=False),
        name="status-server", daemon=True,
    )
    server.start()

    logger.info("Replication controller for cluster '%s' starting, status server on :%d",
                settings.cluster_id, port)
    kopf.run(
        registry=operator.register(kopf.OperatorRegistry()),
        settings=operator.configure(kopf.OperatorSettings()),
        clusterwide=True,
        standalone=True,
        ready_flag=operator.ready,
    )


if __name__ == "__main__":
    run()
