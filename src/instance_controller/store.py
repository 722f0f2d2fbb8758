"""Cluster resource store.

The store owns the Instance custom resources and the Pods backing them. It is
the single arbiter of concurrent writes: an optimistic-concurrency conflict is
reported as ConflictError and the caller retries the whole reconciliation.
"""

from __future__ import annotations

import abc
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import urllib3
from kubernetes import client as k8s
from kubernetes.client.exceptions import ApiException

from instance_controller.resources import GROUP, PLURAL, VERSION, Instance, Workload

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Any store failure; transient unless stated otherwise."""


class NotFoundError(StoreError):
    pass


class ConflictError(StoreError):
    """Optimistic-concurrency conflict or the object already exists."""


class StoreTimeoutError(StoreError):
    pass


class ClusterStore(abc.ABC):
    @abc.abstractmethod
    def get_instance(self, namespace: str, name: str) -> Instance: ...

    @abc.abstractmethod
    def update_instance(self, instance: Instance) -> Instance: ...

    @abc.abstractmethod
    def delete_instance(self, instance: Instance) -> None: ...

    @abc.abstractmethod
    def get_workload(self, namespace: str, name: str) -> Workload: ...

    @abc.abstractmethod
    def create_workload(self, manifest: Dict[str, Any]) -> Workload: ...


@contextmanager
def _translate(op: str, what: str) -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(f"{op} {what}: not found") from e
        if e.status == 409:
            raise ConflictError(f"{op} {what}: conflict ({e.reason})") from e
        raise StoreError(f"{op} {what}: {e.status} {e.reason}") from e
    except urllib3.exceptions.TimeoutError as e:
        raise StoreTimeoutError(f"{op} {what}: timed out") from e
    except urllib3.exceptions.HTTPError as e:
        raise StoreError(f"{op} {what}: {e}") from e


class KubernetesStore(ClusterStore):
    """ClusterStore backed by the Kubernetes API."""

    def __init__(
        self,
        custom_api: k8s.CustomObjectsApi,
        core_api: k8s.CoreV1Api,
        request_timeout: float = 10.0,
        status_subresource: bool = True,
    ):
        self._custom = custom_api
        self._core = core_api
        self._timeout = request_timeout
        self._status_subresource = status_subresource

    @classmethod
    def from_api_client(cls, api_client: k8s.ApiClient, **kwargs) -> "KubernetesStore":
        return cls(k8s.CustomObjectsApi(api_client), k8s.CoreV1Api(api_client), **kwargs)

    def get_instance(self, namespace: str, name: str) -> Instance:
        with _translate("get", f"instance {namespace}/{name}"):
            obj = self._custom.get_namespaced_custom_object(
                GROUP, VERSION, namespace, PLURAL, name, _request_timeout=self._timeout
            )
        return Instance.from_dict(obj)

    def update_instance(self, instance: Instance) -> Instance:
        body = instance.to_dict()
        with _translate("update", f"instance {instance.key}"):
            obj = self._custom.replace_namespaced_custom_object(
                GROUP, VERSION, instance.namespace, PLURAL, instance.name, body,
                _request_timeout=self._timeout,
            )
            if self._status_subresource:
                # the main endpoint ignores status writes when /status is enabled
                obj["status"] = body["status"]
                obj = self._custom.replace_namespaced_custom_object_status(
                    GROUP, VERSION, instance.namespace, PLURAL, instance.name, obj,
                    _request_timeout=self._timeout,
                )
        return Instance.from_dict(obj)

    def delete_instance(self, instance: Instance) -> None:
        with _translate("delete", f"instance {instance.key}"):
            self._custom.delete_namespaced_custom_object(
                GROUP, VERSION, instance.namespace, PLURAL, instance.name,
                body=k8s.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=self._timeout,
            )

    def get_workload(self, namespace: str, name: str) -> Workload:
        with _translate("get", f"workload {namespace}/{name}"):
            pod = self._core.read_namespaced_pod(name, namespace, _request_timeout=self._timeout)
        return Workload.from_dict(self._core.api_client.sanitize_for_serialization(pod))

    def create_workload(self, manifest: Dict[str, Any]) -> Workload:
        meta = manifest.get("metadata") or {}
        namespace = meta.get("namespace") or "default"
        with _translate("create", f"workload {namespace}/{meta.get('name', '')}"):
            pod = self._core.create_namespaced_pod(namespace, manifest, _request_timeout=self._timeout)
        logger.info(f"Workload created: {namespace}/{meta.get('name', '')}")
        return Workload.from_dict(self._core.api_client.sanitize_for_serialization(pod))
