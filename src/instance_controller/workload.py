from __future__ import annotations

import copy
from typing import Any, Dict

from instance_controller.resources import API_VERSION, INSTANCE_ID_ENV, KIND, Instance


def owner_reference(instance: Instance) -> Dict[str, Any]:
    """Controller reference so the store garbage-collects the Pod with its Instance."""
    if not instance.uid:
        raise ValueError(f"Instance {instance.key} has no uid; cannot own a workload")
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "name": instance.name,
        "uid": instance.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def build_workload(instance: Instance) -> Dict[str, Any]:
    """Pod manifest for an initialized instance, named by its unique ID."""
    workload_id = instance.status.id
    if not workload_id:
        raise ValueError(f"Instance {instance.key} has no unique ID")

    spec = copy.deepcopy(instance.template)
    for container in spec.get("containers") or []:
        env = [e for e in container.get("env") or [] if e.get("name") != INSTANCE_ID_ENV]
        env.append({"name": INSTANCE_ID_ENV, "value": workload_id})
        container["env"] = env

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": workload_id,
            "namespace": instance.namespace,
            "labels": dict(instance.labels),
            "annotations": dict(instance.annotations),
            "ownerReferences": [owner_reference(instance)],
        },
        "spec": spec,
    }
