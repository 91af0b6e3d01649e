"""
Control-plane discovery: one background poller per cluster.

Phase 1 waits until the workload API server answers, then triggers a reconcile
of the owning ICSCluster. Phase 2 waits until the ``ControlPlaneInitialized``
condition is observed on the Cluster; only then does the poller retire and
give up its registry slot, so a second poller cannot start while the first
trigger is still being processed.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from ics_operator import config
from ics_operator.models import ObjectRef
from ics_operator.triggers import TriggerSink

logger = logging.getLogger(__name__)


class DiscoveryPhase(str, Enum):
    WAITING_FOR_API = "WaitingForAPIServer"
    WAITING_FOR_INITIALIZED = "WaitingForControlPlaneInitialized"
    DONE = "Done"
    CANCELLED = "Cancelled"


class PollerRegistry:
    """Set of cluster UIDs that currently have a running poller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, "ControlPlaneDiscovery"] = {}

    def try_register(self, cluster_uid: str, poller: "ControlPlaneDiscovery") -> bool:
        with self._lock:
            if cluster_uid in self._active:
                return False
            self._active[cluster_uid] = poller
            return True

    def release(self, cluster_uid: str, poller: "ControlPlaneDiscovery") -> None:
        with self._lock:
            if self._active.get(cluster_uid) is poller:
                del self._active[cluster_uid]

    def get(self, cluster_uid: str) -> Optional["ControlPlaneDiscovery"]:
        with self._lock:
            return self._active.get(cluster_uid)

    def __contains__(self, cluster_uid: str) -> bool:
        with self._lock:
            return cluster_uid in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def cancel_all(self) -> None:
        with self._lock:
            pollers: List[ControlPlaneDiscovery] = list(self._active.values())
        for poller in pollers:
            poller.cancel()


class ControlPlaneDiscovery:
    """Two-phase poll task for a single cluster.

    :meth:`step` performs exactly one check, so tests can drive it without a
    thread; :meth:`start` runs the same steps in a daemon thread.
    """

    def __init__(
        self,
        cluster_uid: str,
        owner: ObjectRef,
        is_api_server_online: Callable[[], bool],
        is_control_plane_initialized: Callable[[], bool],
        sink: TriggerSink,
        registry: PollerRegistry,
        interval: float = config.API_POLL_INTERVAL,
    ):
        self.cluster_uid = cluster_uid
        self.owner = owner
        self.phase = DiscoveryPhase.WAITING_FOR_API
        self._is_api_server_online = is_api_server_online
        self._is_control_plane_initialized = is_control_plane_initialized
        self._sink = sink
        self._registry = registry
        self._interval = interval
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def finished(self) -> bool:
        return self.phase in (DiscoveryPhase.DONE, DiscoveryPhase.CANCELLED)

    def step(self) -> DiscoveryPhase:
        if self.finished:
            return self.phase
        if self._cancelled.is_set():
            return self._retire(DiscoveryPhase.CANCELLED)

        if self.phase is DiscoveryPhase.WAITING_FOR_API:
            if self._is_api_server_online():
                logger.info("API server of %s is online, triggering reconcile", self.owner)
                self._sink.trigger(self.owner, "api-server-online")
                self.phase = DiscoveryPhase.WAITING_FOR_INITIALIZED
                logger.info("Start polling %s for control plane initialized", self.owner)
        elif self.phase is DiscoveryPhase.WAITING_FOR_INITIALIZED:
            if self._is_control_plane_initialized():
                logger.info("Control plane of %s is initialized, stop polling", self.owner)
                return self._retire(DiscoveryPhase.DONE)
        return self.phase

    def run(self) -> None:
        logger.info("Start polling API server of %s for online check", self.owner)
        while not self.finished:
            try:
                self.step()
            except Exception:  # noqa: BLE001  a failing probe must not kill the poller
                logger.exception("Discovery poll for %s failed", self.owner)
            if self.finished:
                break
            if self._cancelled.wait(self._interval):
                self._retire(DiscoveryPhase.CANCELLED)

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=f"ics-discovery-{self.cluster_uid}", daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _retire(self, phase: DiscoveryPhase) -> DiscoveryPhase:
        self.phase = phase
        self._registry.release(self.cluster_uid, self)
        return phase


def start_discovery(
    registry: PollerRegistry,
    cluster_uid: str,
    owner: ObjectRef,
    is_api_server_online: Callable[[], bool],
    is_control_plane_initialized: Callable[[], bool],
    sink: TriggerSink,
    interval: float = config.API_POLL_INTERVAL,
    background: bool = True,
) -> Optional[ControlPlaneDiscovery]:
    """Start a poller for ``cluster_uid`` unless one is already running.

    Returns the new poller, or None if the start was a no-op.
    """
    poller = ControlPlaneDiscovery(
        cluster_uid, owner, is_api_server_online, is_control_plane_initialized, sink, registry, interval
    )
    if not registry.try_register(cluster_uid, poller):
        logger.info("Skipping reconcile when API server is online for %s: already polling", owner)
        return None
    if background:
        poller.start()
    return poller
