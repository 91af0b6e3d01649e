import httpx
import pytest

from ics_operator.platform import ICenterClient, PlatformError, PlatformNotFound, TaskState


def _client(handler):
    return ICenterClient("https://icenter.example/api", "admin", "secret", transport=httpx.MockTransport(handler))


def test_find_vm_by_name():
    def handler(request):
        assert request.url.params["name"] == "vm-1"
        return httpx.Response(200, json={"items": [
            {"id": "other", "name": "vm-10"},
            {"id": "abc", "name": "vm-1", "status": "STARTED", "hostId": "h1", "memoryInByte": 1024,
             "nics": [{"ips": ["10.0.0.5"], "mac": "aa:bb", "networkName": "mgmt", "connected": True}]},
        ]})

    vm = _client(handler).find_vm_by_name("vm-1")

    assert vm.id == "abc"
    assert vm.host_id == "h1"
    assert vm.memory_bytes == 1024
    assert vm.nics[0].ip_addrs == ["10.0.0.5"]


def test_find_vm_by_name_not_found():
    client = _client(lambda request: httpx.Response(200, json={"items": []}))
    with pytest.raises(PlatformNotFound):
        client.find_vm_by_name("vm-1")


def test_404_is_not_found():
    client = _client(lambda request: httpx.Response(404))
    with pytest.raises(PlatformNotFound):
        client.get_vm("abc")


def test_server_error_is_platform_error():
    client = _client(lambda request: httpx.Response(503, text="maintenance"))
    with pytest.raises(PlatformError) as excinfo:
        client.get_host("h1")
    assert excinfo.value.status_code == 503
    assert not isinstance(excinfo.value, PlatformNotFound)


def test_transport_error_is_platform_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PlatformError, match="connection refused"):
        _client(handler).get_task("t-1")


def test_task_state():
    client = _client(lambda request: httpx.Response(200, json={"state": "ERROR", "error": "disk full"}))
    task = client.get_task("t-1")

    assert task.id == "t-1"
    assert task.task_state is TaskState.ERROR
    assert task.done and task.failed


def test_delete_vm_is_forced_and_cascading():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["params"] = dict(request.url.params)
        seen["password"] = request.headers.get("password")
        return httpx.Response(200, json={"taskId": "t-9", "state": "RUNNING"})

    task = _client(handler).delete_vm("abc")

    assert task.id == "t-9"
    assert seen == {"method": "DELETE", "params": {"deleteFile": "true", "isForce": "true"}, "password": "secret"}


def test_power_actions():
    actions = []

    def handler(request):
        actions.append((request.url.path, request.url.params["action"]))
        return httpx.Response(200, json={"taskId": "t-1"})

    client = _client(handler)
    client.power_on_vm("abc")
    client.power_off_vm("abc")

    assert actions == [("/api/vms/abc/action", "poweron"), ("/api/vms/abc/action", "poweroff")]


def test_create_without_task():
    client = _client(lambda request: httpx.Response(200, json={"id": "abc"}))
    assert client.create_vm({"name": "vm-1"}) is None


def test_get_version_is_authenticated():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["authorization"] = request.headers.get("authorization")
        return httpx.Response(200, json={"version": "8.0.1"})

    assert _client(handler).get_version() == "8.0.1"
    assert seen["path"] == "/api/system/version"
    assert seen["authorization"].startswith("Basic ")


def test_get_version_missing():
    assert _client(lambda request: httpx.Response(200, json={})).get_version() == ""


def test_get_version_unauthorized():
    client = _client(lambda request: httpx.Response(401, text="bad credentials"))
    with pytest.raises(PlatformError) as excinfo:
        client.get_version()
    assert excinfo.value.status_code == 401
