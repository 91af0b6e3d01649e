import pytest

from ics_operator.errors import RetryableError
from ics_operator.models import TaskOperation, VMPhase
from ics_operator.platform import TaskState
from ics_operator.vmservice import VMService, run_pass


@pytest.fixture
def service(notifier, network_waiter):
    return VMService(notifier, network_waiter)


def test_running_vm_is_powered_off_first(service, make_ctx, platform, repository, notifier):
    platform.add_vm(status="STARTED")

    phase = run_pass(make_ctx(), service.destroy_vm)

    assert phase is VMPhase.PENDING
    assert platform.mutations() == ["power_off_vm"]
    status = repository.last_status()
    assert status["taskRef"] == "poweroff-1"
    assert status["taskOperation"] == TaskOperation.POWER_OFF.value
    assert "task/poweroff-1" in notifier


def test_stopped_vm_is_deleted_with_disks(service, make_ctx, platform, repository):
    platform.add_vm(status="STOPPED")

    phase = run_pass(make_ctx(), service.destroy_vm)

    assert phase is VMPhase.PENDING
    assert platform.mutations() == ["delete_vm"]
    assert platform.calls[-1] == ("delete_vm", ("vm-id-1", True, True))
    assert repository.last_status()["taskOperation"] == TaskOperation.DELETE.value


def test_full_teardown_sequence(service, make_ctx, platform, repository):
    platform.add_vm(status="STARTED")
    run_pass(make_ctx(), service.destroy_vm)

    # iCenter finishes the power off.
    platform.add_task("poweroff-1", TaskState.FINISHED)
    platform.vms["vm-id-1"] = platform.vms["vm-id-1"].model_copy(update={"status": "STOPPED"})
    run_pass(make_ctx(status=repository.objects[make_ctx().ref]["status"]), service.destroy_vm)

    # iCenter finishes the delete.
    platform.add_task("delete-2", TaskState.FINISHED)
    del platform.vms["vm-id-1"]
    phase = run_pass(make_ctx(status=repository.objects[make_ctx().ref]["status"]), service.destroy_vm)

    assert platform.mutations() == ["power_off_vm", "delete_vm"]
    assert phase is VMPhase.NOT_FOUND
    assert repository.last_status()["taskRef"] is None


def test_missing_vm_is_already_destroyed(service, make_ctx, platform, repository):
    phase = run_pass(make_ctx(), service.destroy_vm)

    assert phase is VMPhase.NOT_FOUND
    assert platform.mutations() == []
    assert repository.last_status()["phase"] == "notfound"


def test_in_flight_delete_is_waited_for(service, make_ctx, platform):
    platform.add_vm(status="STOPPED")
    platform.add_task("delete-3", TaskState.RUNNING)
    ctx = make_ctx(status={"phase": "pending", "taskRef": "delete-3", "taskOperation": "delete"})

    assert run_pass(ctx, service.destroy_vm) is VMPhase.PENDING
    assert platform.mutations() == []


def test_power_off_failure_is_retryable(service, make_ctx, platform, failing):
    platform.add_vm(status="STARTED")
    failing("power_off_vm")
    with pytest.raises(RetryableError):
        run_pass(make_ctx(), service.destroy_vm)


def test_unknown_status_goes_straight_to_delete(service, make_ctx, platform, repository):
    platform.add_vm(status="MIGRATING")

    phase = run_pass(make_ctx(), service.destroy_vm)

    assert phase is VMPhase.PENDING
    assert platform.mutations() == ["delete_vm"]
    status = repository.last_status()
    assert status.get("powerState") is None
    assert status["taskOperation"] == TaskOperation.DELETE.value
