from __future__ import annotations

import copy
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

GROUP = "instance.cow.network"
VERSION = "v1"
PLURAL = "instances"
KIND = "Instance"
API_VERSION = f"{GROUP}/{VERSION}"

ID_ANNOTATION = f"{GROUP}/id"
LAST_STATE_ANNOTATION = f"{GROUP}/last-state"
INSTANCE_ID_ENV = "INSTANCE_ID"


class InstanceState(str, enum.Enum):
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    ENDING = "Ending"


def raw_json(value: Any) -> str:
    """JSON text of an opaque value.

    Opaque payloads are stored either as decoded JSON or as a string holding
    JSON text. Strings are returned as-is, None as "".
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


@dataclass
class Player:
    id: str
    # opaque, kept in the shape it was read in
    metadata: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Player":
        return cls(id=str(data.get("id", "")), metadata=copy.deepcopy(data.get("metadata")))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id}
        if self.metadata is not None:
            out["metadata"] = copy.deepcopy(self.metadata)
        return out


@dataclass
class InstanceMetadata:
    state: Any = None
    players: List[Player] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "InstanceMetadata":
        data = data or {}
        players: List[Player] = []
        seen = set()
        for raw in data.get("players") or []:
            player = Player.from_dict(raw)
            if player.id in seen:
                continue
            seen.add(player.id)
            players.append(player)
        return cls(state=copy.deepcopy(data.get("state")), players=players)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"players": [p.to_dict() for p in self.players]}
        if self.state is not None:
            out["state"] = copy.deepcopy(self.state)
        return out


@dataclass
class InstanceStatus:
    state: str = ""
    id: str = ""
    ip: str = ""
    metadata: InstanceMetadata = field(default_factory=InstanceMetadata)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "InstanceStatus":
        data = data or {}
        return cls(
            state=data.get("state") or "",
            id=data.get("id") or "",
            ip=data.get("ip") or "",
            metadata=InstanceMetadata.from_dict(data.get("metadata")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "id": self.id,
            "ip": self.ip,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class Instance:
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    template: Dict[str, Any] = field(default_factory=dict)
    status: InstanceStatus = field(default_factory=InstanceStatus)
    # object as last read from the cluster; fields the controller does not own
    # (finalizers, ownerReferences, other spec/status keys) are written back from it
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def identity(self) -> str:
        """Unique ID already assigned to this instance, if any."""
        return self.status.id or self.annotations.get(ID_ANNOTATION, "")

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Instance":
        meta = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "default",
            uid=meta.get("uid") or "",
            resource_version=meta.get("resourceVersion") or "",
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            template=copy.deepcopy(spec.get("template") or {}),
            status=InstanceStatus.from_dict(obj.get("status")),
            raw=copy.deepcopy(obj),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Full object for a write: the last read object with our fields laid over it."""
        obj = copy.deepcopy(self.raw)
        obj["apiVersion"] = API_VERSION
        obj["kind"] = KIND

        meta = obj.setdefault("metadata", {})
        meta["name"] = self.name
        meta["namespace"] = self.namespace
        meta["labels"] = dict(self.labels)
        meta["annotations"] = dict(self.annotations)
        if self.uid:
            meta["uid"] = self.uid
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version

        spec = obj.setdefault("spec", {})
        spec["template"] = copy.deepcopy(self.template)

        # status.metadata belongs to the application and is only filled in when absent
        status = obj.get("status") or {}
        status["state"] = self.status.state
        status["id"] = self.status.id
        status["ip"] = self.status.ip
        if "metadata" not in status:
            status["metadata"] = self.status.metadata.to_dict()
        obj["status"] = status
        return obj

    def snapshot(self) -> "Instance":
        return copy.deepcopy(self)


@dataclass
class Workload:
    """Read-only view over the Pod backing an instance."""

    name: str
    namespace: str
    ip: str = ""
    owner_references: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Workload":
        meta = obj.get("metadata") or {}
        status = obj.get("status") or {}
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "default",
            ip=status.get("podIP") or "",
            owner_references=list(meta.get("ownerReferences") or []),
        )

    def owner_instance(self) -> Optional[str]:
        for ref in self.owner_references:
            if ref.get("kind") == KIND and ref.get("apiVersion") == API_VERSION:
                return ref.get("name")
        return None
