"""
Background watches that re-trigger a reconcile when something remote changes.

A pass never waits for a platform task. It registers interest here and
returns; a single background thread per watch list polls the registered
conditions and fires the trigger sink exactly once per registration.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from ics_operator import config
from ics_operator.models import ObjectRef
from ics_operator.platform import ComputePlatform, PlatformError, PlatformNotFound
from ics_operator.triggers import TriggerSink

logger = logging.getLogger(__name__)


class _Watch:
    __slots__ = ("ref", "reason", "check", "deadline")

    def __init__(self, ref: ObjectRef, reason: str, check: Callable[[], bool], deadline: Optional[float]):
        self.ref = ref
        self.reason = reason
        self.check = check
        self.deadline = deadline


class WatchList:
    """Keyed set of pending conditions, each firing one trigger when met."""

    name = "watch"

    def __init__(self, sink: TriggerSink, interval: float):
        self._sink = sink
        self._interval = interval
        self._watches: Dict[str, _Watch] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._watches

    def __len__(self) -> int:
        with self._lock:
            return len(self._watches)

    def _add(self, key: str, watch: _Watch) -> bool:
        with self._lock:
            if key in self._watches:
                return False
            self._watches[key] = watch
        logger.debug("%s: watching %s for %s", self.name, key, watch.ref)
        return True

    def poll_once(self, now: Optional[float] = None) -> List[str]:
        """Evaluate every watch once; return the keys that fired."""
        now = time.monotonic() if now is None else now
        with self._lock:
            pending = list(self._watches.items())

        fired = []
        for key, watch in pending:
            if watch.check():
                with self._lock:
                    if self._watches.get(key) is not watch:
                        continue
                    del self._watches[key]
                self._sink.trigger(watch.ref, watch.reason)
                fired.append(key)
            elif watch.deadline is not None and now >= watch.deadline:
                with self._lock:
                    if self._watches.get(key) is watch:
                        del self._watches[key]
                logger.warning("%s: gave up waiting on %s for %s", self.name, key, watch.ref)
        return fired

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name=f"ics-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001  keep the loop alive, log the real error
                logger.exception("%s: poll failed", self.name)


class TaskCompletionNotifier(WatchList):
    """Re-trigger a resource once a platform task finishes, whatever the outcome."""

    name = "task-notifier"

    def __init__(
        self,
        sink: TriggerSink,
        interval: float = config.TASK_POLL_INTERVAL,
        timeout: float = config.TASK_WATCH_TIMEOUT,
    ):
        super().__init__(sink, interval)
        self._timeout = timeout

    def watch(self, ref: ObjectRef, platform: ComputePlatform, task_id: str, now: Optional[float] = None) -> bool:
        # Past the deadline the periodic resync takes over.
        now = time.monotonic() if now is None else now
        return self._add(
            f"task/{task_id}",
            _Watch(ref, f"task {task_id} finished", lambda: self._task_done(platform, task_id), now + self._timeout),
        )

    @staticmethod
    def _task_done(platform: ComputePlatform, task_id: str) -> bool:
        try:
            return platform.get_task(task_id).done
        except PlatformNotFound:
            return True
        except PlatformError as exc:
            logger.debug("Polling task %s failed, will retry: %s", task_id, exc)
            return False


class NetworkReadyWaiter(WatchList):
    """Re-trigger a resource once its VM reports at least one IP address."""

    name = "network-waiter"

    def __init__(
        self,
        sink: TriggerSink,
        interval: float = config.TASK_POLL_INTERVAL,
        timeout: float = config.NETWORK_WAIT_TIMEOUT,
    ):
        super().__init__(sink, interval)
        self._timeout = timeout

    def watch(self, ref: ObjectRef, platform: ComputePlatform, vm_id: str, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return self._add(
            f"network/{vm_id}",
            _Watch(ref, "vm network ready", lambda: self._has_address(platform, vm_id), now + self._timeout),
        )

    @staticmethod
    def _has_address(platform: ComputePlatform, vm_id: str) -> bool:
        try:
            vm = platform.get_vm(vm_id)
        except PlatformNotFound:
            return True
        except PlatformError as exc:
            logger.debug("Polling network of vm %s failed, will retry: %s", vm_id, exc)
            return False
        return any(nic.ip_addrs for nic in vm.nics)
