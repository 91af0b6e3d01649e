"""
VM lifecycle state machine.

:meth:`VMService.reconcile_vm` makes sure the VM is in the desired state by:

1. creating the VM if it does not exist, with the bootstrap data as cloud-init
   user data, then
2. syncing its identity and network status, then
3. powering it on, and finally
4. reporting it ``ready`` once iCenter says it is running.

:meth:`VMService.destroy_vm` powers the VM off and then destroys it.

Each pass issues at most one mutating call. Whatever task that call returns is
stored on the status and handed to the completion notifier, which triggers the
next pass once iCenter reports the task done. Nothing here waits for a task.
"""
from __future__ import annotations

from typing import Any, Callable, Dict

from ics_operator.context import VMContext
from ics_operator.errors import (
    BootstrapDataMissing,
    BootstrapDataUnreadable,
    PoweringOnFailed,
    RetryableError,
    TerminalError,
)
from ics_operator.models import PowerState, TaskOperation, VMPhase
from ics_operator.platform import PlatformError, PlatformNotFound, VMInfo
from ics_operator.probe import find_vm, known_power_state, network_status, power_state
from ics_operator.repository import RepositoryError, ResourceNotFound
from ics_operator.taskguard import reconcile_in_flight_task
from ics_operator.watchers import NetworkReadyWaiter, TaskCompletionNotifier

BOOTSTRAP_DATA_KEY = "value"
MIB = 1024 * 1024
GIB = 1024 * MIB

# Power sync dispatch; every PowerState must have a handler.
POWER_STATE_HANDLERS: Dict[PowerState, str] = {
    PowerState.POWERED_OFF: "_power_on",
    PowerState.POWERED_ON: "_powered_on",
    PowerState.SUSPENDED: "_transitioning",
}

if set(POWER_STATE_HANDLERS) != set(PowerState):
    raise RuntimeError("every PowerState needs a power sync handler")


def build_create_payload(ctx: VMContext, user_data: str) -> Dict[str, Any]:
    """Translate the ICSVM spec into an iCenter create request."""
    spec = ctx.spec
    return {
        "name": ctx.name,
        "template": spec.template,
        "datacenter": spec.datacenter,
        "cluster": spec.cluster,
        "cpuNum": spec.num_cpus,
        "memoryInByte": spec.memory_mib * MIB,
        "disks": [{"sizeInByte": spec.disk_gib * GIB}],
        "nics": [
            {
                "networkName": device.network_name,
                "dhcp": device.dhcp4,
                "ips": list(device.ip_addrs),
                "gateway": device.gateway4,
                "mac": device.mac_addr,
            }
            for device in spec.network.devices
        ],
        "cloudInit": {"hostname": ctx.name, "userData": user_data},
    }


class VMService:
    def __init__(self, notifier: TaskCompletionNotifier, network_waiter: NetworkReadyWaiter):
        self.notifier = notifier
        self.network_waiter = network_waiter

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def reconcile_vm(self, ctx: VMContext) -> VMPhase:
        try:
            # An in-flight task leaves the status untouched.
            if reconcile_in_flight_task(ctx):
                return ctx.status.phase

            probe = find_vm(ctx)
            if not probe.found:
                self._create_vm(ctx)
                ctx.status.set_phase(VMPhase.PENDING)
                return VMPhase.PENDING

            vm = probe.vm
            self._reconcile_uuid(ctx, vm)
            self._reconcile_network_status(ctx, vm)
            if not self._reconcile_power_state(ctx, vm):
                ctx.status.set_phase(VMPhase.PENDING)
                return VMPhase.PENDING

            ctx.status.set_phase(VMPhase.READY)
            return VMPhase.READY
        finally:
            self._reconcile_on_task_completion(ctx)

    def destroy_vm(self, ctx: VMContext) -> VMPhase:
        try:
            if reconcile_in_flight_task(ctx):
                return ctx.status.phase

            probe = find_vm(ctx)
            if not probe.found:
                # Deletion is idempotent: a missing VM is the desired state.
                ctx.status.clear_task()
                ctx.status.set_phase(VMPhase.NOT_FOUND)
                return VMPhase.NOT_FOUND

            vm = probe.vm
            # Anything but a running VM, known status or not, goes straight to delete.
            state = known_power_state(vm)
            ctx.status.power_state = state
            if state is PowerState.POWERED_ON:
                try:
                    task = ctx.platform.power_off_vm(vm.id)
                except PlatformError as exc:
                    raise RetryableError(str(exc), operation="power off vm", resource=ctx) from exc
                ctx.status.set_task(task.id, TaskOperation.POWER_OFF)
                ctx.status.set_phase(VMPhase.PENDING)
                ctx.logger.info("Waiting for VM %s to be powered off", vm.id)
                return VMPhase.PENDING

            try:
                task = ctx.platform.delete_vm(vm.id, force=True, cascade=True)
            except PlatformNotFound:
                ctx.status.set_phase(VMPhase.NOT_FOUND)
                return VMPhase.NOT_FOUND
            except PlatformError as exc:
                raise RetryableError(str(exc), operation="delete vm", resource=ctx) from exc
            ctx.status.set_task(task.id, TaskOperation.DELETE)
            ctx.status.set_phase(VMPhase.PENDING)
            ctx.logger.info("Waiting for VM %s to be destroyed", vm.id)
            return VMPhase.PENDING
        finally:
            self._reconcile_on_task_completion(ctx)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def _create_vm(self, ctx: VMContext) -> None:
        user_data = self._get_bootstrap_data(ctx)
        ctx.logger.info("Creating VM for %s", ctx)
        try:
            task = ctx.platform.create_vm(build_create_payload(ctx, user_data))
        except PlatformError as exc:
            raise RetryableError(str(exc), operation="create vm", resource=ctx) from exc
        if task is not None:
            # Not stored as taskRef: the next pass finds the VM by name.
            self.notifier.watch(ctx.ref, ctx.platform, task.id)

    def _get_bootstrap_data(self, ctx: VMContext) -> str:
        ref = ctx.spec.bootstrap_ref
        if ref is None:
            ctx.logger.info("VM has no bootstrap data")
            raise BootstrapDataMissing(
                "linked icsvm's bootstrapRef is nil", operation="retrieve bootstrap data", resource=ctx
            )

        namespace = ref.namespace or ctx.namespace
        try:
            data = ctx.repository.get_secret(namespace, ref.name)
        except ResourceNotFound as exc:
            raise BootstrapDataUnreadable(
                f"bootstrap data secret {namespace}/{ref.name} not found",
                operation="retrieve bootstrap data",
                resource=ctx,
            ) from exc
        except RepositoryError as exc:
            raise RetryableError(str(exc), operation="retrieve bootstrap data", resource=ctx) from exc

        value = data.get(BOOTSTRAP_DATA_KEY)
        if value is None:
            raise BootstrapDataUnreadable(
                f"secret {BOOTSTRAP_DATA_KEY} key is missing", operation="retrieve bootstrap data", resource=ctx
            )
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BootstrapDataUnreadable(
                f"fail to decode bootstrap data: {exc}", operation="retrieve bootstrap data", resource=ctx
            ) from exc

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def _reconcile_uuid(self, ctx: VMContext, vm: VMInfo) -> None:
        ctx.status.uid = vm.id
        if vm.uuid:
            ctx.status.bios_uuid = vm.uuid
        if vm.host_name or vm.host_id:
            ctx.status.host = vm.host_name or vm.host_id

    def _reconcile_network_status(self, ctx: VMContext, vm: VMInfo) -> None:
        net = network_status(ctx, vm.nics)
        ctx.logger.debug("Network status of %s: %s", ctx, net)
        ctx.status.network = net
        if not net or ctx.status.addresses or not net[0].ip_addrs:
            return

        ctx.status.addresses = [ip for nic in net for ip in nic.ip_addrs]
        ctx.logger.info("VM %s reports addresses %s", vm.id, ctx.status.addresses)
        if ctx.is_control_plane:
            # Endpoint discovery reads these, so they go out right away.
            try:
                ctx.patch()
            except RepositoryError as exc:
                ctx.logger.error("ICSVM patch of IP addresses failed: %s", exc)

    def _reconcile_power_state(self, ctx: VMContext, vm: VMInfo) -> bool:
        state = power_state(ctx, vm)
        ctx.status.power_state = state
        return getattr(self, POWER_STATE_HANDLERS[state])(ctx, vm)

    def _power_on(self, ctx: VMContext, vm: VMInfo) -> bool:
        ctx.logger.info("Powering on VM %s", vm.id)
        if not vm.host_id:
            raise RetryableError(f"vm {vm.id} reports no host", operation="power on vm", resource=ctx)
        try:
            host = ctx.platform.get_host(vm.host_id)
        except PlatformError as exc:
            raise RetryableError(str(exc), operation=f"get host {vm.host_id}", resource=ctx) from exc

        if vm.memory_bytes >= host.free_memory_bytes or vm.memory_bytes >= host.logic_free_memory_bytes:
            raise PoweringOnFailed(
                f"vm needs {vm.memory_bytes} bytes of memory but host {host.id} has "
                f"{host.free_memory_bytes} free ({host.logic_free_memory_bytes} logical)",
                operation="power on vm",
                resource=ctx,
            )

        try:
            task = ctx.platform.power_on_vm(vm.id)
        except PlatformError as exc:
            raise RetryableError(
                f"failed to trigger power on op: {exc}", operation="power on vm", resource=ctx
            ) from exc

        ctx.status.set_task(task.id, TaskOperation.POWER_ON)
        # Once powered on, another pass is due as soon as the VM has addresses.
        self.network_waiter.watch(ctx.ref, ctx.platform, vm.id)
        ctx.logger.info("Waiting for VM %s to be powered on", vm.id)
        return False

    def _powered_on(self, ctx: VMContext, vm: VMInfo) -> bool:
        ctx.logger.info("VM %s is powered on", vm.id)
        return True

    def _transitioning(self, ctx: VMContext, vm: VMInfo) -> bool:
        ctx.logger.info("VM %s is in transitional state %s", vm.id, vm.status)
        return False

    # ------------------------------------------------------------------
    # Completion notification
    # ------------------------------------------------------------------
    def _reconcile_on_task_completion(self, ctx: VMContext) -> None:
        if ctx.status.task_ref:
            self.notifier.watch(ctx.ref, ctx.platform, ctx.status.task_ref)


def _persist(ctx: VMContext, quiet: bool = False) -> None:
    try:
        ctx.patch()
    except RepositoryError as exc:
        if not quiet:
            raise RetryableError(str(exc), operation="patch status", resource=ctx) from exc
        ctx.logger.error("Patching status of %s failed: %s", ctx, exc)


def run_pass(ctx: VMContext, step: Callable[[VMContext], VMPhase]) -> VMPhase:
    """Run one reconcile step and write the status back exactly once."""
    try:
        phase = step(ctx)
    except TerminalError as exc:
        ctx.status.set_failure(exc.reason, exc.detail)
        ctx.logger.error("Reconcile of %s failed: %s", ctx, exc)
        _persist(ctx, quiet=True)
        raise
    except RetryableError as exc:
        ctx.logger.warning("Reconcile of %s will be retried: %s", ctx, exc)
        _persist(ctx, quiet=True)
        raise
    ctx.status.clear_failure()
    _persist(ctx)
    return phase
