"""Instance reconciler: one decide-then-act cycle per trigger.

A trigger delivers an instance key ("namespace/name"). The reconciler loads
the instance, looks up its workload by unique ID, asks the decision engine
what to do and does it:

  - initialize: assign identity, persist, create the workload, emit started
  - update:     copy the workload address into status
  - cleanup:    delete the instance, emit ended
  - ignore:     nothing

Redelivery is safe. Identity is persisted before the workload is created, so a
retry resumes from that checkpoint. An instance that has an identity but no
workload is never re-initialized; it is cleaned up.

Store failures propagate to the trigger source, which owns retry and backoff.
Events follow state: they are sent after the write they describe, and a failed
send is logged and dropped. A workload create that went through but was never
confirmed is found by the retry and synced; its started event is not sent.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional, Tuple

from instance_controller.decider import Action, Decider, decide
from instance_controller.events import EMIT_ERRORS, Emitter
from instance_controller.notify import Notifier
from instance_controller.payload import PayloadError, decode_json
from instance_controller.resources import (
    ID_ANNOTATION,
    LAST_STATE_ANNOTATION,
    Instance,
    InstanceState,
    Workload,
    raw_json,
)
from instance_controller.state_machine import check_state_write, is_terminal
from instance_controller.store import ClusterStore, NotFoundError
from instance_controller.workload import build_workload

logger = logging.getLogger(__name__)

ACTOR = "controller"


class IdentityError(Exception):
    pass


def split_key(key: str, default_namespace: str = "default") -> Tuple[str, str]:
    namespace, sep, name = key.partition("/")
    if not sep:
        return default_namespace, key
    return namespace or default_namespace, name


def _same_state(old: str, new: str) -> bool:
    try:
        return decode_json(old) == decode_json(new)
    except PayloadError:
        return old == new


class Reconciler:
    def __init__(
        self,
        store: ClusterStore,
        emitter: Emitter,
        decider: Optional[Decider] = None,
        id_factory: Callable[[], object] = uuid.uuid4,
        notifier: Optional[Notifier] = None,
        track_state_changes: bool = True,
    ):
        self._store = store
        self._emitter = emitter
        self._decider = decider or Decider(store)
        self._id_factory = id_factory
        self._notifier = notifier or Notifier()
        self._track_state_changes = track_state_changes

    def reconcile(self, key: str) -> Optional[str]:
        """Reconcile a single instance. Returns action taken (string) or None."""
        namespace, name = split_key(key)
        try:
            instance = self._store.get_instance(namespace, name)
        except NotFoundError:
            # deleted; the store garbage-collects the owned workload on its own
            logger.debug(f"[{key}] Instance not found, nothing to do")
            return None

        lookup = self._decider.lookup(instance)
        action = decide(instance, lookup)
        logger.debug(f"[{key}] Decided {action.value} (state={instance.status.state!r}, id={instance.status.id!r})")

        if action is Action.INITIALIZE:
            return self._initialize(instance)
        if action is Action.CLEANUP:
            return self._cleanup(instance)

        result = None
        if action is Action.UPDATE:
            updated = self._update(instance, lookup.workload)
            if updated is not None:
                instance = updated
                result = "updated"

        if self._sync_application_state(instance):
            result = result or "state_changed"
        return result

    def _initialize(self, instance: Instance) -> str:
        identity = instance.identity
        if not identity:
            try:
                identity = str(self._id_factory())
            except Exception as e:
                raise IdentityError(f"could not generate instance id: {e}") from e

        instance.annotations[ID_ANNOTATION] = identity
        instance.status.id = identity
        instance.status.state = InstanceState.INITIALIZING.value
        if self._track_state_changes:
            instance.annotations[LAST_STATE_ANNOTATION] = raw_json(instance.status.metadata.state)

        instance = self._persist(instance)
        logger.info(f"[{instance.key}] Identity {identity} assigned, state → {instance.status.state}")

        self._store.create_workload(build_workload(instance))
        logger.info(f"[{instance.key}] Workload {identity} created")

        self._emit(instance, self._emitter.instance_created, instance)
        return "initialized"

    def _update(self, instance: Instance, workload: Workload) -> Optional[Instance]:
        if workload.ip == instance.status.ip:
            return None
        instance.status.ip = workload.ip
        instance = self._persist(instance)
        logger.info(f"[{instance.key}] Address synced from workload {workload.name}: {workload.ip or '(none)'}")
        return instance

    def _cleanup(self, instance: Instance) -> Optional[str]:
        snapshot = instance.snapshot()
        try:
            self._store.delete_instance(instance)
        except NotFoundError:
            logger.info(f"[{instance.key}] Instance already deleted")
            return None

        state = snapshot.status.state
        logger.info(f"[{instance.key}] Deleted; workload {snapshot.status.id} is gone (state was {state})")
        if state == InstanceState.INITIALIZING.value:
            logger.warning(f"[{instance.key}] Workload vanished before the instance left Initializing")
            self._notifier.notify(
                f"WARN: [{instance.key}] Instance {snapshot.status.id} ended before it started running."
            )
        elif not is_terminal(state):
            logger.info(f"[{instance.key}] Workload ended while instance was {state}")

        self._emit(instance, self._emitter.instance_ended, snapshot)
        return "cleaned_up"

    def _sync_application_state(self, instance: Instance) -> bool:
        """Emit a state-changed event when the application's opaque state moved."""
        if not self._track_state_changes or LAST_STATE_ANNOTATION not in instance.annotations:
            return False

        old = instance.annotations[LAST_STATE_ANNOTATION]
        new = raw_json(instance.status.metadata.state)
        if _same_state(old, new):
            return False

        instance.annotations[LAST_STATE_ANNOTATION] = new
        instance = self._persist(instance)
        logger.info(f"[{instance.key}] Application state changed")
        self._emit(instance, self._emitter.instance_state_changed, instance, old, new)
        return True

    def _persist(self, instance: Instance) -> Instance:
        """Write the instance back, refusing any state change the lifecycle forbids."""
        current = (instance.raw.get("status") or {}).get("state")
        check_state_write(current, instance.status.state, ACTOR)
        return self._store.update_instance(instance)

    def _emit(self, instance: Instance, send, *args) -> None:
        try:
            send(*args)
        except EMIT_ERRORS as e:
            logger.error(f"[{instance.key}] Event dropped: {e}")
