"""
Operator-wide configuration.

Everything is read once from the environment at import time. ``.env`` files are
honoured for local development, so a developer can run the operator against a
kind cluster without exporting a dozen variables by hand.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

# Ensure ENV is loaded *early* so everything that relies on os.getenv works.
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# API groups -----------------------------------------------------------------
# ---------------------------------------------------------------------------
ICS_GROUP = "infrastructure.cluster.x-k8s.io"
ICS_VERSION = "v1beta1"
ICSVM_PLURAL = "icsvms"
ICSCLUSTER_PLURAL = "icsclusters"

CAPI_GROUP = "cluster.x-k8s.io"
CAPI_VERSION = "v1beta1"
CAPI_CLUSTER_PLURAL = "clusters"

# Well-known Cluster API labels, annotations and conditions.
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"
CONTROL_PLANE_INITIALIZED_CONDITION = "ControlPlaneInitialized"
ICENTER_AVAILABLE_CONDITION = "ICenterAvailable"
ICENTER_UNREACHABLE_REASON = "ICenterUnreachable"
CLUSTER_MODULES_AVAILABLE_CONDITION = "ClusterModulesAvailable"
MISSING_ICENTER_VERSION_REASON = "MissingICenterVersion"

# Annotation patched by the trigger sink to ask kopf for another pass.
RECONCILE_REQUESTED_ANNOTATION = "ics.infrastructure.cluster.x-k8s.io/reconcile-requested"

DEFAULT_API_ENDPOINT_PORT = 6443

# ---------------------------------------------------------------------------
# Tunables -------------------------------------------------------------------
# ---------------------------------------------------------------------------
MAX_CONCURRENT_RECONCILES = int(os.getenv("ICS_MAX_CONCURRENT_RECONCILES", "10"))
SYNC_PERIOD = float(os.getenv("ICS_SYNC_PERIOD", "600"))
API_POLL_INTERVAL = float(os.getenv("ICS_API_POLL_INTERVAL", "1"))
TASK_POLL_INTERVAL = float(os.getenv("ICS_TASK_POLL_INTERVAL", "5"))
NETWORK_WAIT_TIMEOUT = float(os.getenv("ICS_NETWORK_WAIT_TIMEOUT", "600"))
TASK_WATCH_TIMEOUT = float(os.getenv("ICS_TASK_WATCH_TIMEOUT", "3600"))
RETRY_DELAY = float(os.getenv("ICS_RETRY_DELAY", "15"))
STATUS_CONFLICT_RETRIES = int(os.getenv("ICS_STATUS_CONFLICT_RETRIES", "5"))
REQUEST_TIMEOUT = float(os.getenv("ICS_REQUEST_TIMEOUT", "30"))
INSTALL_CRDS = _env_bool("ICS_INSTALL_CRDS", False)

WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE") or None
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
POD_NAME = os.getenv("POD_NAME", "unknown")
KOPF_PEERING = os.getenv("KOPF_PEERING", "ics-operator")
