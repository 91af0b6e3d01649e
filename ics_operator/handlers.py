"""
Kopf handlers for the ICS infrastructure provider.

kopf is the dispatcher: it serialises handlers per object, runs sync handlers
in a bounded thread pool, retries on ``kopf.TemporaryError`` and stops on
``kopf.PermanentError`` until the object changes again. The engine's error
taxonomy is mapped onto those two exceptions here and nowhere else.

Layout:
    1. Operator-wide collaborators (set up on startup)
    2. Startup / cleanup
    3. ICSVM handlers (reconcile, destroy, periodic resync, address changes)
    4. ICSCluster handlers
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

import kopf
from kopf import OperatorSettings

from ics_operator import config
from ics_operator.cluster import ClusterReconciler
from ics_operator.context import VMContext
from ics_operator.crds import install_crds
from ics_operator.errors import RetryableError, TerminalError
from ics_operator.identity import IdentityError, PlatformCache
from ics_operator.models import ICSVMSpec, VMPhase, icsvm_ref
from ics_operator.poller import PollerRegistry
from ics_operator.repository import ResourceRepository, init_kubernetes_clients
from ics_operator.triggers import AnnotationTriggerSink
from ics_operator.vmservice import VMService, run_pass
from ics_operator.watchers import NetworkReadyWaiter, TaskCompletionNotifier

logger = logging.getLogger(__name__)

FINALIZER = "icsvm.infrastructure.cluster.x-k8s.io"

# ---------------------------------------------------------------------------
# Collaborators --------------------------------------------------------------
# ---------------------------------------------------------------------------
REPOSITORY: Optional[ResourceRepository] = None
PLATFORMS: Optional[PlatformCache] = None
NOTIFIER: Optional[TaskCompletionNotifier] = None
NETWORK_WAITER: Optional[NetworkReadyWaiter] = None
VMS: Optional[VMService] = None
POLLERS = PollerRegistry()
CLUSTERS: Optional[ClusterReconciler] = None
TRIGGERS: Optional[AnnotationTriggerSink] = None


def _bootstrap() -> None:
    global REPOSITORY, PLATFORMS, NOTIFIER, NETWORK_WAITER, VMS, CLUSTERS, TRIGGERS  # noqa: WPS420
    core_v1, custom_objects, apiext = init_kubernetes_clients()
    if config.INSTALL_CRDS:
        install_crds(apiext)

    REPOSITORY = ResourceRepository(custom_objects, core_v1)
    TRIGGERS = AnnotationTriggerSink(REPOSITORY)
    PLATFORMS = PlatformCache(REPOSITORY)
    NOTIFIER = TaskCompletionNotifier(TRIGGERS)
    NETWORK_WAITER = NetworkReadyWaiter(TRIGGERS)
    VMS = VMService(NOTIFIER, NETWORK_WAITER)
    CLUSTERS = ClusterReconciler(REPOSITORY, POLLERS, TRIGGERS, PLATFORMS)


# ---------------------------------------------------------------------------
# Startup / cleanup ----------------------------------------------------------
# ---------------------------------------------------------------------------
@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, **_: Dict[str, object]) -> None:
    """Tune kopf and build the operator's collaborators."""
    settings.execution.max_workers = config.MAX_CONCURRENT_RECONCILES
    settings.watching.server_timeout = 210  # seconds
    settings.persistence.finalizer = FINALIZER
    logger.info(
        "Kopf configured: max_workers=%s server_timeout=%s",
        settings.execution.max_workers,
        settings.watching.server_timeout,
    )
    _bootstrap()
    NOTIFIER.start()
    NETWORK_WAITER.start()


@kopf.on.cleanup()
def shutdown(**_: Dict[str, object]) -> None:
    logger.info("Stopping watchers and discovery pollers")
    if NOTIFIER is not None:
        NOTIFIER.stop()
    if NETWORK_WAITER is not None:
        NETWORK_WAITER.stop()
    POLLERS.cancel_all()
    if PLATFORMS is not None:
        PLATFORMS.close()


# ---------------------------------------------------------------------------
# ICSVM ----------------------------------------------------------------------
# ---------------------------------------------------------------------------
def _vm_context(body: dict, logger: kopf.Logger) -> VMContext:
    meta = body["metadata"]
    spec = ICSVMSpec.model_validate(body.get("spec") or {})
    try:
        platform = PLATFORMS.get(meta["namespace"], spec.identity_ref, spec.cloud_name)
    except IdentityError as exc:
        logger.error("Cannot resolve iCenter identity: %s", exc)
        raise kopf.TemporaryError(f"identity of {meta['namespace']}/{meta['name']}: {exc}",
                                  delay=config.RETRY_DELAY) from exc
    return VMContext.from_body(body, platform, REPOSITORY, logger)


def _run(ctx: VMContext, step: Callable[[VMContext], VMPhase], permanent: bool = True) -> VMPhase:
    """Run one pass; ``permanent=False`` keeps retrying on terminal errors too.

    kopf treats a permanently failed delete handler as done and drops the
    finalizer, so the destroy path must never raise ``kopf.PermanentError``.
    """
    try:
        return run_pass(ctx, step)
    except TerminalError as exc:
        if not permanent:
            raise kopf.TemporaryError(str(exc), delay=config.RETRY_DELAY) from exc
        raise kopf.PermanentError(str(exc)) from exc
    except RetryableError as exc:
        raise kopf.TemporaryError(str(exc), delay=config.RETRY_DELAY) from exc


@kopf.on.create(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL)
@kopf.on.update(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL)
@kopf.on.resume(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL)
def icsvm_reconcile(body: dict, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Converge the VM towards its spec, one remote mutation at a time."""
    ctx = _vm_context(body, logger)
    logger.info("Reconciling ICSVM %s", ctx)
    phase = _run(ctx, VMS.reconcile_vm)
    logger.info("ICSVM %s is %s", ctx, phase.value)


@kopf.on.delete(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL)
def icsvm_delete(body: dict, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Power off and destroy the VM; keep the finalizer until it is gone."""
    ctx = _vm_context(body, logger)
    logger.info("Handling deletion for ICSVM %s", ctx)
    phase = _run(ctx, VMS.destroy_vm, permanent=False)
    if phase is not VMPhase.NOT_FOUND:
        raise kopf.TemporaryError(f"waiting for VM of {ctx} to be destroyed", delay=config.RETRY_DELAY)
    logger.info("VM of %s no longer exists", ctx)


@kopf.on.timer(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL,
                interval=config.SYNC_PERIOD, initial_delay=config.SYNC_PERIOD)
def icsvm_resync(meta: dict, **_: Dict[str, object]) -> None:
    """Periodic pass, routed through the trigger so it stays serialised with the others."""
    TRIGGERS.trigger(icsvm_ref(meta["namespace"], meta["name"]), "resync")


@kopf.on.field(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL, field="status.addresses")
def icsvm_addresses_changed(old: Optional[list], new: Optional[list], meta: dict, **_: Dict[str, object]) -> None:
    """A control-plane VM with fresh addresses may complete its cluster's endpoint."""
    if not new or old:
        return
    labels = meta.get("labels") or {}
    cluster_name = labels.get(config.CLUSTER_NAME_LABEL)
    if config.CONTROL_PLANE_LABEL not in labels or not cluster_name:
        return
    ref = CLUSTERS.icscluster_for_control_plane_vm(meta["namespace"], cluster_name)
    if ref is not None:
        TRIGGERS.trigger(ref, f"control-plane-vm-addresses {meta['name']}")


# ---------------------------------------------------------------------------
# ICSCluster -----------------------------------------------------------------
# ---------------------------------------------------------------------------
@kopf.on.create(config.ICS_GROUP, config.ICS_VERSION, config.ICSCLUSTER_PLURAL)
@kopf.on.update(config.ICS_GROUP, config.ICS_VERSION, config.ICSCLUSTER_PLURAL)
@kopf.on.resume(config.ICS_GROUP, config.ICS_VERSION, config.ICSCLUSTER_PLURAL)
def icscluster_reconcile(body: dict, patch: kopf.Patch, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    logger.info("Reconciling ICSCluster %s/%s", body["metadata"]["namespace"], body["metadata"]["name"])
    try:
        CLUSTERS.reconcile(body, patch, logger)
    except RetryableError as exc:
        raise kopf.TemporaryError(str(exc), delay=config.RETRY_DELAY) from exc
