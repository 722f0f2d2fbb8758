"""Trigger source: watch streams feeding a bounded pool of reconcile workers.

Keys ("namespace/name") enter a WorkQueue from the Instance and Pod watch
streams. The queue hands each key to at most one worker at a time; a key added
again while it is being processed is queued once more when the worker is done,
so the next reconciliation observes the previous one's writes. A failed
reconciliation is retried with capped exponential backoff.
"""

from __future__ import annotations

import collections
import logging
import threading
from typing import Callable, Deque, Dict, List, Optional, Set

from kubernetes import watch

from instance_controller.resources import GROUP, PLURAL, VERSION, Instance, Workload

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SEC = 300


class ShutDown(Exception):
    pass


class WorkQueue:
    def __init__(self):
        self._cond = threading.Condition()
        self._queue: Deque[str] = collections.deque()
        self._pending: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: List[threading.Timer] = []
        self._shutdown = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown:
                return
            if key in self._processing:
                self._dirty.add(key)
                return
            if key in self._pending:
                return
            self._pending.add(key)
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        timer = threading.Timer(delay, self.add, args=(key,))
        timer.daemon = True
        with self._cond:
            if self._shutdown:
                return
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> str:
        """Block until a key is available. Raises ShutDown once the queue is closed."""
        with self._cond:
            while not self._queue and not self._shutdown:
                if not self._cond.wait(timeout):
                    raise TimeoutError("no key available")
            if self._shutdown:
                raise ShutDown()
            key = self._queue.popleft()
            self._pending.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if not self._shutdown and key not in self._pending:
                    self._pending.add(key)
                    self._queue.append(key)
                    self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            for timer in self._timers:
                timer.cancel()
            self._timers = []
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller:
    def __init__(
        self,
        reconcile: Callable[[str], Optional[str]],
        queue: Optional[WorkQueue] = None,
        workers: int = 4,
        base_backoff: float = 1.0,
        max_backoff: float = 300.0,
    ):
        self._reconcile = reconcile
        self.queue = queue or WorkQueue()
        self._workers = workers
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._failures: Dict[str, int] = {}
        self._failures_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def backoff(self, key: str) -> float:
        with self._failures_lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self._base_backoff * (2 ** failures), self._max_backoff)

    def forget(self, key: str) -> None:
        with self._failures_lock:
            self._failures.pop(key, None)

    def process_one(self, key: str) -> None:
        try:
            action = self._reconcile(key)
        except Exception as e:
            delay = self.backoff(key)
            logger.error(f"[{key}] Reconcile failed, retrying in {delay:.1f}s: {e}", exc_info=True)
            self.queue.add_after(key, delay)
        else:
            self.forget(key)
            if action:
                logger.info(f"[{key}] {action}")
        finally:
            self.queue.done(key)

    def _worker(self) -> None:
        while True:
            try:
                key = self.queue.get()
            except ShutDown:
                return
            self.process_one(key)

    def start_workers(self) -> None:
        for i in range(self._workers):
            t = threading.Thread(target=self._worker, name=f"reconcile-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def start_watches(self, custom_api, core_api, namespace: str) -> None:
        for target, args in (
            (self.watch_instances, (custom_api, namespace)),
            (self.watch_workloads, (core_api, namespace)),
        ):
            t = threading.Thread(target=target, args=args, name=target.__name__, daemon=True)
            t.start()
            self._threads.append(t)

    def watch_instances(self, custom_api, namespace: str) -> None:
        self._watch_loop(
            "instances",
            lambda w: w.stream(
                custom_api.list_namespaced_custom_object,
                GROUP, VERSION, namespace, PLURAL,
                timeout_seconds=WATCH_TIMEOUT_SEC,
            ),
            lambda obj: Instance.from_dict(obj).key,
        )

    def watch_workloads(self, core_api, namespace: str) -> None:
        def _owner_key(obj) -> Optional[str]:
            if not isinstance(obj, dict):
                obj = core_api.api_client.sanitize_for_serialization(obj)
            workload = Workload.from_dict(obj)
            owner = workload.owner_instance()
            return f"{workload.namespace}/{owner}" if owner else None

        self._watch_loop(
            "workloads",
            lambda w: w.stream(core_api.list_namespaced_pod, namespace, timeout_seconds=WATCH_TIMEOUT_SEC),
            _owner_key,
        )

    def _watch_loop(self, what: str, stream: Callable, key_of: Callable) -> None:
        while not self._stop.is_set():
            w = watch.Watch()
            try:
                for event in stream(w):
                    if self._stop.is_set():
                        w.stop()
                        break
                    if event["type"] == "ERROR":
                        # usually 410 Gone: resourceVersion expired, start a fresh stream
                        logger.info(f"Watch on {what} returned error: {event['object']}")
                        break
                    key = key_of(event["object"])
                    if key:
                        self.queue.add(key)
            except Exception as e:
                logger.warning(f"Watch on {what} interrupted: {e}; restarting")
                self._stop.wait(self._base_backoff)

    def run(self, custom_api, core_api, namespace: str) -> None:
        logger.info(f"Controller starting (namespace={namespace}, workers={self._workers})")
        self.start_workers()
        self.start_watches(custom_api, core_api, namespace)
        try:
            self._stop.wait()
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()

    def stop(self) -> None:
        self._stop.set()
        self.queue.shutdown()
