"""
iCenter compute platform: the contract the engine consumes and a thin REST
client implementing it.

Only the calls the reconciliation engine needs are exposed. Every failure is
raised as :class:`PlatformError`; a missing object is the narrower
:class:`PlatformNotFound` so callers can treat it as a legitimate answer.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ics_operator import config

logger = logging.getLogger(__name__)


class PlatformError(Exception):
    """A call to the compute platform failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PlatformNotFound(PlatformError):
    """The requested VM, host or task does not exist."""


# ---------------------------------------------------------------------------
# Remote views ---------------------------------------------------------------
# ---------------------------------------------------------------------------
class IcsVMStatus(str, Enum):
    """Raw VM status strings as reported by iCenter."""

    STARTED = "STARTED"
    STOPPED = "STOPPED"
    PAUSED = "PAUSED"
    RESTARTING = "RESTARTING"
    PENDING = "PENDING"


class TaskState(str, Enum):
    WAITING = "WAITING"
    READY = "READY"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"


class _Remote(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NicInfo(_Remote):
    connected: bool = Field(default=False, alias="connected")
    ip_addrs: List[str] = Field(default_factory=list, alias="ips")
    mac_addr: Optional[str] = Field(default=None, alias="mac")
    network_name: Optional[str] = Field(default=None, alias="networkName")


class VMInfo(_Remote):
    id: str
    uuid: Optional[str] = None
    name: str
    status: str = ""
    host_id: Optional[str] = Field(default=None, alias="hostId")
    host_name: Optional[str] = Field(default=None, alias="hostName")
    memory_bytes: int = Field(default=0, alias="memoryInByte")
    nics: List[NicInfo] = Field(default_factory=list)


class HostInfo(_Remote):
    id: str
    free_memory_bytes: int = Field(default=0, alias="freeMemoryInByte")
    logic_free_memory_bytes: int = Field(default=0, alias="logicFreeMemoryInByte")


class TaskInfo(_Remote):
    id: str = Field(alias="taskId")
    state: str = TaskState.WAITING.value
    error: Optional[str] = None

    @property
    def task_state(self) -> Optional[TaskState]:
        try:
            return TaskState(self.state)
        except ValueError:
            return None

    @property
    def done(self) -> bool:
        return self.task_state in (TaskState.FINISHED, TaskState.ERROR)

    @property
    def failed(self) -> bool:
        return self.task_state is TaskState.ERROR


# ---------------------------------------------------------------------------
# Contract -------------------------------------------------------------------
# ---------------------------------------------------------------------------
class ComputePlatform(Protocol):
    def find_vm_by_name(self, name: str) -> VMInfo: ...

    def get_vm(self, vm_id: str) -> VMInfo: ...

    def create_vm(self, payload: Dict[str, Any]) -> Optional[TaskInfo]: ...

    def power_on_vm(self, vm_id: str) -> TaskInfo: ...

    def power_off_vm(self, vm_id: str) -> TaskInfo: ...

    def delete_vm(self, vm_id: str, force: bool = True, cascade: bool = True) -> TaskInfo: ...

    def get_host(self, host_id: str) -> HostInfo: ...

    def get_task(self, task_id: str) -> TaskInfo: ...

    def get_version(self) -> str: ...


# ---------------------------------------------------------------------------
# REST client ----------------------------------------------------------------
# ---------------------------------------------------------------------------
class ICenterClient:
    """Blocking iCenter REST client built on ``httpx.Client``."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        verify: Any = True,
        timeout: float = config.REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._password = password
        self._http = httpx.Client(
            base_url=self.base_url,
            auth=(username, password),
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise PlatformError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 404:
            raise PlatformNotFound(f"{method} {path}: not found", status_code=404)
        if resp.is_error:
            raise PlatformError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        return resp.json()

    def find_vm_by_name(self, name: str) -> VMInfo:
        data = self._request("GET", "/vms", params={"name": name})
        items = (data or {}).get("items", [])
        for item in items:
            if item.get("name") == name:
                return VMInfo.model_validate(item)
        raise PlatformNotFound(f"vm {name!r} not found", status_code=404)

    def get_vm(self, vm_id: str) -> VMInfo:
        return VMInfo.model_validate(self._request("GET", f"/vms/{vm_id}"))

    def create_vm(self, payload: Dict[str, Any]) -> Optional[TaskInfo]:
        data = self._request("POST", "/vms", json=payload)
        if data and "taskId" in data:
            return TaskInfo.model_validate(data)
        return None

    def power_on_vm(self, vm_id: str) -> TaskInfo:
        return TaskInfo.model_validate(self._request("PUT", f"/vms/{vm_id}/action", params={"action": "poweron"}))

    def power_off_vm(self, vm_id: str) -> TaskInfo:
        return TaskInfo.model_validate(self._request("PUT", f"/vms/{vm_id}/action", params={"action": "poweroff"}))

    def delete_vm(self, vm_id: str, force: bool = True, cascade: bool = True) -> TaskInfo:
        params = {"deleteFile": str(cascade).lower(), "isForce": str(force).lower()}
        data = self._request("DELETE", f"/vms/{vm_id}", params=params, headers={"password": self._password})
        return TaskInfo.model_validate(data)

    def get_host(self, host_id: str) -> HostInfo:
        return HostInfo.model_validate(self._request("GET", f"/hosts/{host_id}"))

    def get_task(self, task_id: str) -> TaskInfo:
        data = self._request("GET", f"/tasks/{task_id}") or {}
        data.setdefault("taskId", task_id)
        return TaskInfo.model_validate(data)

    def get_version(self) -> str:
        """Authenticated round-trip that also reports the iCenter API version."""
        data = self._request("GET", "/system/version") or {}
        return str(data.get("version") or "")
