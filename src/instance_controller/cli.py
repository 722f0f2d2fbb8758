from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from kubernetes import client as k8s
from kubernetes import config as kube_config

from instance_controller.bus import KafkaBus
from instance_controller.config import ControllerConfig
from instance_controller.controller import Controller
from instance_controller.events import Emitter
from instance_controller.notify import Notifier
from instance_controller.reconciler import Reconciler
from instance_controller.store import KubernetesStore

logger = logging.getLogger("instance_controller")

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile Instance resources and publish lifecycle events.")
    parser.add_argument(
        "--config",
        type=str,
        default="",
        help="Optional YAML config file. Environment variables take precedence.",
    )
    parser.add_argument(
        "--once",
        type=str,
        default="",
        metavar="NAMESPACE/NAME",
        help="Reconcile a single instance key and exit.",
    )
    return parser.parse_args(argv)


def load_api_client() -> k8s.ApiClient:
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        kube_config.load_kube_config()
    return k8s.ApiClient()


def build_reconciler(config: ControllerConfig, api_client: k8s.ApiClient) -> Reconciler:
    store = KubernetesStore.from_api_client(
        api_client,
        request_timeout=config.request_timeout_sec,
        status_subresource=config.status_subresource,
    )
    emitter = Emitter(
        KafkaBus.from_config(config),
        topic=config.kafka_topic,
        source=config.event_source,
        partition_key=config.partition_key,
    )
    return Reconciler(
        store,
        emitter,
        notifier=Notifier(config.notify_webhook_url),
        track_state_changes=config.track_state_changes,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = ControllerConfig.load(args.config or None)
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)

    api_client = load_api_client()
    reconciler = build_reconciler(config, api_client)

    if args.once:
        action = reconciler.reconcile(args.once)
        logger.info(f"[{args.once}] {action or 'no action'}")
        return 0

    controller = Controller(
        reconciler.reconcile,
        workers=config.workers,
        max_backoff=config.max_backoff_sec,
    )
    controller.run(k8s.CustomObjectsApi(api_client), k8s.CoreV1Api(api_client), config.namespace)
    return 0


if __name__ == "__main__":
    sys.exit(main())
