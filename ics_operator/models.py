"""Pydantic views of the ICSVM / ICSCluster custom resources and their enums."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from ics_operator import config


# ---------------------------------------------------------------------------
# Enums ----------------------------------------------------------------------
# ---------------------------------------------------------------------------
class VMPhase(str, Enum):
    """Coarse lifecycle classification of an ICSVM."""

    PENDING = "pending"
    READY = "ready"
    NOT_FOUND = "notfound"


class PowerState(str, Enum):
    """Power states the engine understands."""

    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    SUSPENDED = "suspended"


class TaskOperation(str, Enum):
    """Kind of remote operation a stored task reference belongs to."""

    CREATE = "create"
    POWER_ON = "powerOn"
    POWER_OFF = "powerOff"
    DELETE = "delete"


class FailureReason(str, Enum):
    """Values written to ``status.failureReason``."""

    BOOTSTRAP_DATA_MISSING = "BootstrapDataMissing"
    POWERING_ON_FAILED = "PoweringOnFailed"
    POWERING_OFF_FAILED = "PoweringOffFailed"
    CREATION_FAILED = "CreationFailed"
    DELETION_FAILED = "DeletionFailed"
    UNEXPECTED_POWER_STATE = "UnexpectedPowerState"


TASK_FAILURE_REASONS: Dict[TaskOperation, FailureReason] = {
    TaskOperation.CREATE: FailureReason.CREATION_FAILED,
    TaskOperation.POWER_ON: FailureReason.POWERING_ON_FAILED,
    TaskOperation.POWER_OFF: FailureReason.POWERING_OFF_FAILED,
    TaskOperation.DELETE: FailureReason.DELETION_FAILED,
}


# ---------------------------------------------------------------------------
# Object references ----------------------------------------------------------
# ---------------------------------------------------------------------------
class ObjectRef(NamedTuple):
    """Address of a namespaced custom object."""

    group: str
    version: str
    plural: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.plural} {self.namespace}/{self.name}"


def icsvm_ref(namespace: str, name: str) -> ObjectRef:
    return ObjectRef(config.ICS_GROUP, config.ICS_VERSION, config.ICSVM_PLURAL, namespace, name)


def icscluster_ref(namespace: str, name: str) -> ObjectRef:
    return ObjectRef(config.ICS_GROUP, config.ICS_VERSION, config.ICSCLUSTER_PLURAL, namespace, name)


def capi_cluster_ref(namespace: str, name: str) -> ObjectRef:
    return ObjectRef(config.CAPI_GROUP, config.CAPI_VERSION, config.CAPI_CLUSTER_PLURAL, namespace, name)


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SecretReference(_Model):
    namespace: Optional[str] = None
    name: str


class IdentityReference(_Model):
    kind: str = "Secret"
    name: str


# ---------------------------------------------------------------------------
# ICSVM ----------------------------------------------------------------------
# ---------------------------------------------------------------------------
class NetworkDeviceSpec(_Model):
    network_name: str = Field(alias="networkName")
    dhcp4: bool = False
    ip_addrs: List[str] = Field(default_factory=list, alias="ipAddrs")
    gateway4: Optional[str] = None
    mac_addr: Optional[str] = Field(default=None, alias="macAddr")


class NetworkSpec(_Model):
    devices: List[NetworkDeviceSpec] = Field(default_factory=list)


class ICSVMSpec(_Model):
    """Desired state of a VM as declared by its owner."""

    template: Optional[str] = None
    datacenter: Optional[str] = None
    cluster: Optional[str] = None
    num_cpus: int = Field(default=2, alias="numCPUs")
    memory_mib: int = Field(default=2048, alias="memoryMiB")
    disk_gib: int = Field(default=20, alias="diskGiB")
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    bootstrap_ref: Optional[SecretReference] = Field(default=None, alias="bootstrapRef")
    identity_ref: Optional[IdentityReference] = Field(default=None, alias="identityRef")
    cloud_name: Optional[str] = Field(default=None, alias="cloudName")


class NetworkStatus(_Model):
    connected: bool = False
    ip_addrs: List[str] = Field(default_factory=list, alias="ipAddrs")
    mac_addr: Optional[str] = Field(default=None, alias="macAddr")
    network_name: Optional[str] = Field(default=None, alias="networkName")


class ICSVMStatus(_Model):
    """Reconciler-owned observed state of a VM."""

    phase: VMPhase = VMPhase.PENDING
    ready: bool = False
    power_state: Optional[PowerState] = Field(default=None, alias="powerState")
    bios_uuid: Optional[str] = Field(default=None, alias="biosUUID")
    uid: Optional[str] = Field(default=None, alias="UID")
    host: Optional[str] = None
    addresses: List[str] = Field(default_factory=list)
    network: List[NetworkStatus] = Field(default_factory=list)
    task_ref: Optional[str] = Field(default=None, alias="taskRef")
    task_operation: Optional[TaskOperation] = Field(default=None, alias="taskOperation")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    failure_message: Optional[str] = Field(default=None, alias="failureMessage")

    def set_phase(self, phase: VMPhase) -> None:
        self.phase = phase
        self.ready = phase is VMPhase.READY

    def set_task(self, task_id: str, operation: TaskOperation) -> None:
        self.task_ref = task_id
        self.task_operation = operation

    def clear_task(self) -> None:
        self.task_ref = None
        self.task_operation = None

    def set_failure(self, reason: str, message: str) -> None:
        self.failure_reason = reason
        self.failure_message = message

    def clear_failure(self) -> None:
        self.failure_reason = None
        self.failure_message = None

    def to_patch(self) -> Dict[str, Any]:
        """Full status body; ``None`` values clear the field under a merge patch."""
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# ICSCluster -----------------------------------------------------------------
# ---------------------------------------------------------------------------
class APIEndpoint(_Model):
    host: str = ""
    port: int = 0

    def is_zero(self) -> bool:
        return not self.host and not self.port


class ICSClusterSpec(_Model):
    cloud_name: Optional[str] = Field(default=None, alias="cloudName")
    identity_ref: Optional[IdentityReference] = Field(default=None, alias="identityRef")
    control_plane_endpoint: APIEndpoint = Field(default_factory=APIEndpoint, alias="controlPlaneEndpoint")
