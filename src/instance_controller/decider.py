"""Decision engine: maps (Instance, workload lookup) to the action to take.

Rules, first match wins:
  1. no state yet                   → INITIALIZE (regardless of the workload)
  2. workload not found             → CLEANUP (identity is single-use)
  3. workload lookup failed         → raise, the caller retries later
  4. state Initializing             → UPDATE (sync address into status)
  5. otherwise                      → IGNORE
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from instance_controller.resources import Instance, InstanceState, Workload
from instance_controller.store import ClusterStore, NotFoundError, StoreError


class Action(enum.Enum):
    INITIALIZE = "initialize"
    UPDATE = "update"
    CLEANUP = "cleanup"
    IGNORE = "ignore"


@dataclass(frozen=True)
class WorkloadLookup:
    workload: Optional[Workload] = None
    error: Optional[Exception] = None

    @classmethod
    def found(cls, workload: Workload) -> "WorkloadLookup":
        return cls(workload=workload)

    @classmethod
    def not_found(cls) -> "WorkloadLookup":
        return cls(error=NotFoundError("workload not found"))

    @property
    def is_not_found(self) -> bool:
        return isinstance(self.error, NotFoundError)


def decide(instance: Instance, lookup: WorkloadLookup) -> Action:
    if not instance.status.state:
        return Action.INITIALIZE

    if lookup.is_not_found:
        return Action.CLEANUP

    if lookup.error is not None:
        raise lookup.error

    if instance.status.state == InstanceState.INITIALIZING.value:
        return Action.UPDATE

    return Action.IGNORE


class Decider:
    def __init__(self, store: ClusterStore):
        self._store = store

    def lookup(self, instance: Instance) -> WorkloadLookup:
        """Fetch the workload keyed by the instance's unique ID, never its name."""
        if not instance.status.id:
            return WorkloadLookup.not_found()
        try:
            return WorkloadLookup.found(self._store.get_workload(instance.namespace, instance.status.id))
        except StoreError as e:
            return WorkloadLookup(error=e)

    def decide(self, instance: Instance) -> Action:
        return decide(instance, self.lookup(instance))
