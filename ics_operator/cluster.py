"""
ICSCluster reconciliation.

The cluster reconciler validates the iCenter identity, discovers the control
plane endpoint from the addresses of control-plane ICSVMs, and makes sure a
discovery poller is watching for the workload API server to come online.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

import kubernetes
import urllib3
import yaml
from kubernetes.client import ApiException, CoreV1Api

from ics_operator import config
from ics_operator.errors import RetryableError
from ics_operator.identity import IdentityError, PlatformCache, get_cloud_from_secret, is_secret_identity, validate_inputs
from ics_operator.models import APIEndpoint, ICSClusterSpec, ObjectRef, capi_cluster_ref, icscluster_ref
from ics_operator.platform import PlatformError
from ics_operator.poller import PollerRegistry, start_discovery
from ics_operator.repository import RepositoryError, ResourceNotFound, ResourceRepository
from ics_operator.triggers import TriggerSink

logger = logging.getLogger(__name__)

KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"
API_SERVER_PROBE_TIMEOUT = 5


def is_condition_true(obj: Dict[str, Any], condition_type: str) -> bool:
    for cond in (obj.get("status") or {}).get("conditions") or []:
        if cond.get("type") == condition_type:
            return cond.get("status") == "True"
    return False


def set_condition(
    conditions: List[Dict[str, Any]],
    condition_type: str,
    status: bool,
    reason: Optional[str] = None,
    message: Optional[str] = None,
    severity: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Return a copy of ``conditions`` with ``condition_type`` set."""
    value = "True" if status else "False"
    result = [dict(c) for c in conditions if c.get("type") != condition_type]
    previous = next((c for c in conditions if c.get("type") == condition_type), None)
    transition = datetime.now(UTC).isoformat()
    if previous is not None and previous.get("status") == value:
        transition = previous.get("lastTransitionTime", transition)
    cond: Dict[str, Any] = {"type": condition_type, "status": value, "lastTransitionTime": transition}
    if not status:
        cond.update({"reason": reason, "message": message, "severity": severity or "Error"})
    result.append(cond)
    return result


def is_paused(*objs: Dict[str, Any]) -> bool:
    for obj in objs:
        if (obj.get("spec") or {}).get("paused"):
            return True
        if config.PAUSED_ANNOTATION in ((obj.get("metadata") or {}).get("annotations") or {}):
            return True
    return False


class ClusterReconciler:
    def __init__(
        self,
        repository: ResourceRepository,
        registry: PollerRegistry,
        sink: TriggerSink,
        platforms: PlatformCache,
        poll_interval: float = config.API_POLL_INTERVAL,
        background_pollers: bool = True,
    ):
        self.repository = repository
        self.registry = registry
        self.sink = sink
        self.platforms = platforms
        self.poll_interval = poll_interval
        self.background_pollers = background_pollers

    def reconcile(self, body: Dict[str, Any], patch: Dict[str, Any], log: logging.Logger | logging.LoggerAdapter = logger) -> None:
        """Reconcile one ICSCluster. Changes are written into the kopf ``patch``."""
        meta = body["metadata"]
        namespace, name = meta["namespace"], meta["name"]
        ref = icscluster_ref(namespace, name)

        cluster = self.get_owner_cluster(meta)
        if cluster is None:
            log.info("Waiting for Cluster Controller to set OwnerRef on ICSCluster")
            return
        if is_paused(cluster, body):
            log.info("ICSCluster %s/%s linked to a cluster that is paused", namespace, name)
            return

        spec = ICSClusterSpec.model_validate(body.get("spec") or {})
        status = body.get("status") or {}
        patch.setdefault("status", {})
        patch.setdefault("spec", {})

        conditions = status.get("conditions") or []
        try:
            version = self.reconcile_icenter_connectivity(namespace, spec)
        except (IdentityError, PlatformError) as exc:
            patch["status"]["conditions"] = set_condition(
                conditions,
                config.ICENTER_AVAILABLE_CONDITION,
                False,
                reason=config.ICENTER_UNREACHABLE_REASON,
                message=str(exc),
            )
            raise RetryableError(str(exc), operation="reach icenter", resource=ref) from exc
        conditions = set_condition(conditions, config.ICENTER_AVAILABLE_CONDITION, True)

        if version:
            patch["status"]["iCenterVersion"] = version
        else:
            log.error("could not reconcile iCenter version")
            conditions = set_condition(
                conditions,
                config.CLUSTER_MODULES_AVAILABLE_CONDITION,
                False,
                reason=config.MISSING_ICENTER_VERSION_REASON,
                message="iCenter API version not set",
                severity="Warning",
            )
        patch["status"]["conditions"] = conditions
        patch["status"]["ready"] = True

        try:
            if not self.reconcile_control_plane_endpoint(cluster, spec, patch, log):
                log.info("control plane endpoint is not reconciled")
        finally:
            self.reconcile_when_api_server_online(cluster, ref, log)

    # ------------------------------------------------------------------
    def get_owner_cluster(self, meta: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for owner in meta.get("ownerReferences") or []:
            if owner.get("kind") != "Cluster" or not owner.get("apiVersion", "").startswith(config.CAPI_GROUP + "/"):
                continue
            try:
                return self.repository.get(capi_cluster_ref(meta["namespace"], owner["name"]))
            except ResourceNotFound:
                return None
            except RepositoryError as exc:
                raise RetryableError(str(exc), operation="get owner cluster", resource=owner["name"]) from exc
        return None

    def reconcile_identity_secret(self, namespace: str, spec: ICSClusterSpec) -> None:
        validate_inputs(spec.identity_ref)
        if is_secret_identity(spec.identity_ref):
            get_cloud_from_secret(self.repository, namespace, spec.identity_ref.name, spec.cloud_name)

    def reconcile_icenter_connectivity(self, namespace: str, spec: ICSClusterSpec) -> str:
        """Reach iCenter with the cluster's identity and return its API version."""
        self.reconcile_identity_secret(namespace, spec)
        platform = self.platforms.get(namespace, spec.identity_ref, spec.cloud_name)
        return platform.get_version()

    def reconcile_control_plane_endpoint(
        self,
        cluster: Dict[str, Any],
        spec: ICSClusterSpec,
        patch: Dict[str, Any],
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> bool:
        cluster_endpoint = APIEndpoint.model_validate((cluster.get("spec") or {}).get("controlPlaneEndpoint") or {})
        if not cluster_endpoint.is_zero():
            patch["spec"]["controlPlaneEndpoint"] = cluster_endpoint.model_dump()
            log.info("skipping control plane endpoint reconciliation: ControlPlaneEndpoint already set on Cluster")
            return True
        if not spec.control_plane_endpoint.is_zero():
            log.info("skipping control plane endpoint reconciliation: ControlPlaneEndpoint already set on ICSCluster")
            return True

        meta = cluster["metadata"]
        selector = f"{config.CLUSTER_NAME_LABEL}={meta['name']},{config.CONTROL_PLANE_LABEL}"
        try:
            vms = self.repository.list(
                config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL, meta["namespace"], label_selector=selector
            )
        except RepositoryError as exc:
            raise RetryableError(str(exc), operation="list control plane ICSVMs", resource=meta["name"]) from exc

        for vm in vms:
            addresses = (vm.get("status") or {}).get("addresses") or []
            if not addresses:
                continue
            endpoint = APIEndpoint(host=addresses[0], port=config.DEFAULT_API_ENDPOINT_PORT)
            patch["spec"]["controlPlaneEndpoint"] = endpoint.model_dump()
            log.info(
                "ControlPlaneEndpoint discovered via control plane ICSVM %s: %s:%d",
                vm["metadata"]["name"], endpoint.host, endpoint.port,
            )
            return True
        return False

    # ------------------------------------------------------------------
    def reconcile_when_api_server_online(
        self, cluster: Dict[str, Any], owner: ObjectRef, log: logging.Logger | logging.LoggerAdapter = logger
    ) -> None:
        if is_condition_true(cluster, config.CONTROL_PLANE_INITIALIZED_CONDITION):
            log.info("skipping reconcile when API server is online: controlPlaneInitialized")
            return
        meta = cluster["metadata"]
        namespace, name = meta["namespace"], meta["name"]
        start_discovery(
            self.registry,
            meta.get("uid") or f"{namespace}/{name}",
            owner,
            lambda: self.is_api_server_online(namespace, name),
            lambda: self.is_control_plane_initialized(namespace, name),
            self.sink,
            self.poll_interval,
            background=self.background_pollers,
        )

    def is_api_server_online(self, namespace: str, cluster_name: str) -> bool:
        try:
            data = self.repository.get_secret(namespace, cluster_name + KUBECONFIG_SECRET_SUFFIX)
            kubeconfig = yaml.safe_load(data[KUBECONFIG_SECRET_KEY])
            api_client = kubernetes.config.new_client_from_config_dict(kubeconfig)
        except (RepositoryError, KeyError, yaml.YAMLError, kubernetes.config.ConfigException) as exc:
            logger.debug("No usable kubeconfig for cluster %s/%s: %s", namespace, cluster_name, exc)
            return False

        try:
            CoreV1Api(api_client).list_node(limit=1, _request_timeout=API_SERVER_PROBE_TIMEOUT)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as exc:
            logger.debug("API server of %s/%s is not online yet: %s", namespace, cluster_name, exc)
            return False
        finally:
            api_client.close()
        logger.info("API server of cluster %s/%s is online", namespace, cluster_name)
        return True

    def is_control_plane_initialized(self, namespace: str, cluster_name: str) -> bool:
        try:
            cluster = self.repository.get(capi_cluster_ref(namespace, cluster_name))
        except ResourceNotFound:
            logger.info("exiting early because cluster %s/%s no longer exists", namespace, cluster_name)
            return True
        except RepositoryError as exc:
            logger.error("failed to get cluster %s/%s while checking if control plane is initialized: %s",
                         namespace, cluster_name, exc)
            return False
        return is_condition_true(cluster, config.CONTROL_PLANE_INITIALIZED_CONDITION)

    def icscluster_for_control_plane_vm(self, namespace: str, cluster_name: str) -> Optional[ObjectRef]:
        """Return the ICSCluster to re-trigger when a control-plane ICSVM gets addresses."""
        try:
            cluster = self.repository.get(capi_cluster_ref(namespace, cluster_name))
        except RepositoryError as exc:
            logger.error("ICSVM is missing cluster label or cluster %s/%s does not exist: %s",
                         namespace, cluster_name, exc)
            return None
        if is_condition_true(cluster, config.CONTROL_PLANE_INITIALIZED_CONDITION):
            return None
        if not APIEndpoint.model_validate((cluster.get("spec") or {}).get("controlPlaneEndpoint") or {}).is_zero():
            return None
        infra_ref = (cluster.get("spec") or {}).get("infrastructureRef") or {}
        if infra_ref.get("kind") != "ICSCluster" or not infra_ref.get("name"):
            return None
        return icscluster_ref(namespace, infra_ref["name"])
