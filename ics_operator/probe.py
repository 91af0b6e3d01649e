"""Locate a VM on iCenter and translate what iCenter reports about it."""
from __future__ import annotations

import ipaddress
from typing import Dict, List, NamedTuple, Optional

from ics_operator.context import VMContext
from ics_operator.errors import RetryableError, UnexpectedPowerState
from ics_operator.models import NetworkStatus, PowerState
from ics_operator.platform import IcsVMStatus, NicInfo, PlatformError, PlatformNotFound, VMInfo

# Static mapping between iCenter's status strings and our power states.
ICS_STATUS_TO_POWER_STATE: Dict[IcsVMStatus, PowerState] = {
    IcsVMStatus.STARTED: PowerState.POWERED_ON,
    IcsVMStatus.STOPPED: PowerState.POWERED_OFF,
    IcsVMStatus.PAUSED: PowerState.SUSPENDED,
    IcsVMStatus.RESTARTING: PowerState.SUSPENDED,
    IcsVMStatus.PENDING: PowerState.SUSPENDED,
}

if set(ICS_STATUS_TO_POWER_STATE) != set(IcsVMStatus):
    raise RuntimeError("every iCenter VM status needs a power state")


class ProbeResult(NamedTuple):
    vm: Optional[VMInfo]

    @property
    def found(self) -> bool:
        return self.vm is not None


def find_vm(ctx: VMContext) -> ProbeResult:
    """Find the VM by its stored ID, falling back to the resource name."""
    try:
        if ctx.status.uid:
            return ProbeResult(ctx.platform.get_vm(ctx.status.uid))
        return ProbeResult(ctx.platform.find_vm_by_name(ctx.name))
    except PlatformNotFound:
        ctx.logger.info("VM for %s not found on iCenter", ctx)
        return ProbeResult(None)
    except PlatformError as exc:
        raise RetryableError(str(exc), operation="find vm", resource=ctx) from exc


def known_power_state(vm: VMInfo) -> Optional[PowerState]:
    """Map the raw iCenter status, or return None if it is not one we know."""
    try:
        return ICS_STATUS_TO_POWER_STATE[IcsVMStatus(vm.status)]
    except ValueError:
        return None


def power_state(ctx: VMContext, vm: VMInfo) -> PowerState:
    state = known_power_state(vm)
    if state is None:
        raise UnexpectedPowerState(f"unexpected power state {vm.status!r} for vm {vm.id}", resource=ctx)
    return state


def sanitize_ip_addrs(ctx: VMContext, ip_addrs: List[str]) -> List[str]:
    """Drop strings that are not usable node addresses."""
    clean = []
    for raw in ip_addrs:
        try:
            addr = ipaddress.ip_address(raw.split("/")[0].strip())
        except ValueError:
            ctx.logger.debug("Ignoring invalid IP address %r reported for %s", raw, ctx)
            continue
        if addr.is_loopback or addr.is_link_local or addr.is_unspecified:
            continue
        clean.append(str(addr))
    return clean


def network_status(ctx: VMContext, nics: List[NicInfo]) -> List[NetworkStatus]:
    return [
        NetworkStatus(
            connected=nic.connected,
            ip_addrs=sanitize_ip_addrs(ctx, nic.ip_addrs),
            mac_addr=nic.mac_addr,
            network_name=nic.network_name,
        )
        for nic in nics
    ]
