from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from redis_operator.core.models import AdminCommandResult
from redis_operator.runtime.reconciler import ClusterReconciler, ReconcileResult

logger = logging.getLogger(__name__)


class OperatorController:
    """
    Drives one serialized reconcile loop per cluster instance.

    Every tick and every manual action for an instance runs under that instance's
    lock, so at most one of them touches a cluster at a time. Distinct instances
    run on their own threads and share nothing but the reconciler's collaborators.
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        on_result: Optional[Callable[[ReconcileResult], None]] = None,
    ) -> None:
        self.reconciler = reconciler
        self.on_result = on_result
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}
        self._wakeups: Dict[str, threading.Event] = {}
        self._stop_event = threading.Event()

    def lock_for(self, instance: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(instance)
            if lock is None:
                lock = threading.Lock()
                self._locks[instance] = lock
            return lock

    def reconcile_once(self, instance: str) -> ReconcileResult:
        """Run one tick for `instance`, waiting for any tick already in flight."""
        with self.lock_for(instance):
            result = self.reconciler.reconcile(instance)
        if self.on_result is not None:
            self.on_result(result)
        return result

    def start(self, instances: Optional[Iterable[str]] = None) -> List[str]:
        """Start a loop for each instance; defaults to every declared instance."""
        self._stop_event.clear()
        names = list(instances) if instances is not None else self.reconciler.source.list_instances()
        started = []
        for instance in names:
            if instance in self._threads and self._threads[instance].is_alive():
                continue
            wakeup = threading.Event()
            thread = threading.Thread(
                target=self._loop,
                args=(instance, wakeup),
                name=f"reconcile-{instance}",
                daemon=True,
            )
            self._wakeups[instance] = wakeup
            self._threads[instance] = thread
            thread.start()
            started.append(instance)
            logger.info("Started reconcile loop for %s", instance)
        return started

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for wakeup in self._wakeups.values():
            wakeup.set()
        for thread in self._threads.values():
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads.clear()
        self._wakeups.clear()

    def running_instances(self) -> List[str]:
        return sorted(name for name, thread in self._threads.items() if thread.is_alive())

    def wait(self, interval: float) -> None:
        """Block until stopped, picking up newly declared instances every `interval` seconds."""
        while not self._stop_event.wait(interval):
            try:
                self.start()
            except Exception:
                logger.exception("Listing cluster instances failed")

    def trigger_reconcile(self, instance: str) -> ReconcileResult:
        return self.reconcile_once(instance)

    def force_reset(self, instance: str) -> None:
        with self.lock_for(instance):
            self.reconciler.force_reset(instance)
        wakeup = self._wakeups.get(instance)
        if wakeup is not None:
            wakeup.set()

    def manual_rebalance(self, instance: str) -> AdminCommandResult:
        with self.lock_for(instance):
            return self.reconciler.rebalance(instance)

    def manual_fix(self, instance: str) -> AdminCommandResult:
        with self.lock_for(instance):
            return self.reconciler.fix(instance)

    def dump(self, instance: str) -> Dict[str, Any]:
        with self.lock_for(instance):
            return self.reconciler.dump(instance)

    def _loop(self, instance: str, wakeup: threading.Event) -> None:
        while not self._stop_event.is_set():
            try:
                result = self.reconcile_once(instance)
            except Exception:
                # A tick never takes the loop down; retry after the usual interval.
                logger.exception("Reconcile tick for %s failed", instance)
                result = None

            if result is not None and result.stopped:
                logger.info("Reconcile loop for %s finished", instance)
                return

            wakeup.wait(self.reconciler.settings.requeue_seconds)
            wakeup.clear()
