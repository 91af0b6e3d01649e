"""In-memory fakes for the platform, the repository and the trigger sink."""
import copy
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

import pytest

from ics_operator.context import VMContext
from ics_operator.models import ICSVMSpec, ICSVMStatus, ObjectRef, icsvm_ref
from ics_operator.platform import HostInfo, PlatformError, PlatformNotFound, TaskInfo, TaskState, VMInfo
from ics_operator.repository import RepositoryError, ResourceNotFound
from ics_operator.watchers import NetworkReadyWaiter, TaskCompletionNotifier

log = logging.getLogger("tests")

GIB = 1024 ** 3
MUTATING_CALLS = {"create_vm", "power_on_vm", "power_off_vm", "delete_vm"}


class FakePlatform:
    """Records every call; VMs, hosts and tasks are plain dicts the test fills in."""

    def __init__(self):
        self.vms: Dict[str, VMInfo] = {}
        self.hosts: Dict[str, HostInfo] = {}
        self.tasks: Dict[str, TaskInfo] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.fail: Dict[str, Exception] = {}
        self.version = "8.0.1"
        self._ids = itertools.count(1)

    # helpers for tests -------------------------------------------------
    def add_vm(self, name="vm-1", vm_id="vm-id-1", status="STARTED", memory=2 * GIB, host_id="host-1",
               nics=None, uuid="bios-uuid-1") -> VMInfo:
        vm = VMInfo(id=vm_id, uuid=uuid, name=name, status=status, host_id=host_id, host_name=host_id,
                    memory_bytes=memory, nics=nics or [])
        self.vms[vm_id] = vm
        return vm

    def add_host(self, host_id="host-1", free=8 * GIB, logic_free=8 * GIB) -> HostInfo:
        host = HostInfo(id=host_id, free_memory_bytes=free, logic_free_memory_bytes=logic_free)
        self.hosts[host_id] = host
        return host

    def add_task(self, task_id, state=TaskState.RUNNING, error=None) -> TaskInfo:
        task = TaskInfo(id=task_id, state=state.value, error=error)
        self.tasks[task_id] = task
        return task

    def mutations(self) -> List[str]:
        return [name for name, _ in self.calls if name in MUTATING_CALLS]

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail:
            raise self.fail[name]

    def _new_task(self, prefix) -> TaskInfo:
        return self.add_task(f"{prefix}-{next(self._ids)}")

    # ComputePlatform -----------------------------------------------------
    def find_vm_by_name(self, name):
        self._record("find_vm_by_name", name)
        for vm in self.vms.values():
            if vm.name == name:
                return vm
        raise PlatformNotFound(f"vm {name} not found", status_code=404)

    def get_vm(self, vm_id):
        self._record("get_vm", vm_id)
        if vm_id not in self.vms:
            raise PlatformNotFound(f"vm {vm_id} not found", status_code=404)
        return self.vms[vm_id]

    def create_vm(self, payload):
        self._record("create_vm", payload)
        return self._new_task("create")

    def power_on_vm(self, vm_id):
        self._record("power_on_vm", vm_id)
        return self._new_task("poweron")

    def power_off_vm(self, vm_id):
        self._record("power_off_vm", vm_id)
        return self._new_task("poweroff")

    def delete_vm(self, vm_id, force=True, cascade=True):
        self._record("delete_vm", vm_id, force, cascade)
        if vm_id not in self.vms:
            raise PlatformNotFound(f"vm {vm_id} not found", status_code=404)
        return self._new_task("delete")

    def get_host(self, host_id):
        self._record("get_host", host_id)
        if host_id not in self.hosts:
            raise PlatformNotFound(f"host {host_id} not found", status_code=404)
        return self.hosts[host_id]

    def get_task(self, task_id):
        self._record("get_task", task_id)
        if task_id not in self.tasks:
            raise PlatformNotFound(f"task {task_id} not found", status_code=404)
        return self.tasks[task_id]

    def get_version(self):
        self._record("get_version")
        return self.version


class FakePlatformCache:
    """Hands out the one fake platform for every identity."""

    def __init__(self, platform):
        self.platform = platform
        self.requests: List[Tuple[str, Any, str]] = []

    def get(self, namespace, identity_ref, cloud_name):
        self.requests.append((namespace, identity_ref, cloud_name))
        return self.platform

    def close(self):
        pass


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, sep, value = term.partition("=")
        if key not in labels:
            return False
        if sep and labels[key] != value:
            return False
    return True


class FakeRepository:
    """Dict-backed stand-in for :class:`ResourceRepository`."""

    def __init__(self):
        self.objects: Dict[ObjectRef, Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.status_writes: List[Tuple[ObjectRef, Dict[str, Any]]] = []
        self.patches: List[Tuple[ObjectRef, Dict[str, Any]]] = []
        self.fail_status_writes = 0
        self._rv = itertools.count(100)

    def add(self, ref: ObjectRef, body: Dict[str, Any]) -> Dict[str, Any]:
        body.setdefault("metadata", {}).update({"namespace": ref.namespace, "name": ref.name})
        body["metadata"].setdefault("resourceVersion", str(next(self._rv)))
        self.objects[ref] = body
        return body

    def add_secret(self, namespace: str, name: str, data: Dict[str, bytes]) -> None:
        self.secrets[(namespace, name)] = data

    def get(self, ref):
        if ref not in self.objects:
            raise ResourceNotFound(f"{ref} not found", status=404)
        return copy.deepcopy(self.objects[ref])

    def list(self, group, version, plural, namespace, label_selector=None):
        return [
            copy.deepcopy(body)
            for ref, body in self.objects.items()
            if (ref.group, ref.version, ref.plural, ref.namespace) == (group, version, plural, namespace)
            and _matches((body.get("metadata") or {}).get("labels") or {}, label_selector)
        ]

    def patch(self, ref, body):
        if ref not in self.objects:
            raise ResourceNotFound(f"{ref} not found", status=404)
        self.patches.append((ref, body))
        annotations = body.get("metadata", {}).get("annotations") or {}
        self.objects[ref]["metadata"].setdefault("annotations", {}).update(annotations)
        return self.get(ref)

    def update_status(self, ref, status, resource_version=None, retries=5):
        if self.fail_status_writes:
            self.fail_status_writes -= 1
            raise RepositoryError("apiserver unavailable", status=503)
        body = status() if callable(status) else status
        self.status_writes.append((ref, copy.deepcopy(body)))
        obj = self.objects.get(ref)
        if obj is None:
            return None
        obj["status"] = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = str(next(self._rv))
        return obj["metadata"]["resourceVersion"]

    def get_secret(self, namespace, name):
        if (namespace, name) not in self.secrets:
            raise ResourceNotFound(f"secret {namespace}/{name} not found", status=404)
        return dict(self.secrets[(namespace, name)])

    def last_status(self) -> Dict[str, Any]:
        return self.status_writes[-1][1]


class RecordingSink:
    def __init__(self):
        self.triggers: List[Tuple[ObjectRef, str]] = []

    def trigger(self, ref, reason):
        self.triggers.append((ref, reason))

    def refs(self) -> List[ObjectRef]:
        return [ref for ref, _ in self.triggers]


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def platforms(platform):
    return FakePlatformCache(platform)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return TaskCompletionNotifier(sink, interval=0.01)


@pytest.fixture
def network_waiter(sink):
    return NetworkReadyWaiter(sink, interval=0.01, timeout=60)


@pytest.fixture
def make_ctx(platform, repository):
    """Build a VMContext for ``default/vm-1`` backed by the fakes."""

    def _make(spec=None, status=None, labels=None, name="vm-1", namespace="default") -> VMContext:
        ref = icsvm_ref(namespace, name)
        spec_body = {"bootstrapRef": {"name": "vm-1-bootstrap"}}
        spec_body.update(spec or {})
        status_body = dict(status or {})
        if ref not in repository.objects:
            repository.add(ref, {"spec": spec_body, "status": status_body, "metadata": {"labels": labels or {}}})
        return VMContext(
            ref=ref,
            spec=ICSVMSpec.model_validate(spec_body),
            status=ICSVMStatus.model_validate(status_body),
            platform=platform,
            repository=repository,
            labels=labels,
            resource_version=repository.objects[ref]["metadata"]["resourceVersion"],
            logger=log,
        )

    return _make


@pytest.fixture
def bootstrap_secret(repository):
    repository.add_secret("default", "vm-1-bootstrap", {"value": b"#cloud-config\nhostname: vm-1\n"})
    return repository.secrets[("default", "vm-1-bootstrap")]


@pytest.fixture
def failing(platform):
    """Make the named platform call raise a generic PlatformError."""

    def _fail(name, exc=None):
        platform.fail[name] = exc or PlatformError(f"{name} exploded", status_code=500)

    return _fail
