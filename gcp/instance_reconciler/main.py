"""Instance reconciler as a Cloud Function (gen2).

Each push delivery carries one instance key; the function runs a single
reconciliation for it. Errors are raised, not swallowed: the function then
answers with a failure and the push source (Pub/Sub, Eventarc) redelivers,
which is the retry path for transient store failures.

Payload for both entry points: {"namespace": "...", "name": "..."}.
"""

import base64
import json
import logging

import functions_framework

from instance_controller.cli import LOG_FORMAT, build_reconciler, load_api_client
from instance_controller.config import ControllerConfig

logger = logging.getLogger("reconciler")
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

_reconciler = None


def _get_reconciler():
    global _reconciler
    if _reconciler is None:
        config = ControllerConfig.load()
        _reconciler = build_reconciler(config, load_api_client())
    return _reconciler


def _key_from(data):
    if not isinstance(data, dict) or not data.get("name"):
        raise ValueError(f"Payload must carry an instance name, got: {data!r}")
    return f"{data.get('namespace') or 'default'}/{data['name']}"


def reconcile_key(key):
    action = _get_reconciler().reconcile(key)
    logger.info(f"[{key}] {action or 'no action'}")
    return action


@functions_framework.http
def reconcile_http(request):
    """HTTP entry point for Cloud Functions."""
    try:
        key = _key_from(request.get_json(silent=True))
    except ValueError as e:
        return json.dumps({"status": "error", "error": str(e)}), 400
    action = reconcile_key(key)
    return json.dumps({"status": "ok", "key": key, "action": action}), 200


@functions_framework.cloud_event
def reconcile_event(cloud_event):
    """Cloud Event entry point (Pub/Sub push or Eventarc)."""
    data = cloud_event.data
    if isinstance(data, (bytes, str)):
        data = json.loads(data)
    if isinstance(data, dict) and "message" in data:
        # Pub/Sub envelope: the key travels as the base64 JSON message body
        data = json.loads(base64.b64decode(data["message"].get("data", "")))
    reconcile_key(_key_from(data))
